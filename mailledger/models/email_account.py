from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, DateTime, Boolean,
    UniqueConstraint, Index, Enum as SAEnum,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from mailledger.core.database import Base
from mailledger.core.constants import MailProvider


class EmailAccount(Base):
    __tablename__ = "email_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(BigInteger, nullable=False)
    provider = Column(SAEnum(MailProvider, native_enum=False, length=20), nullable=False)
    email_address = Column(String(255), nullable=False)

    # Fernet ciphertext, never plaintext
    encrypted_access_token = Column(Text, nullable=True)
    encrypted_refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    sync_from_date = Column(DateTime(timezone=True), nullable=True)

    total_emails_processed = Column(BigInteger, nullable=False, default=0)
    total_transactions_extracted = Column(BigInteger, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    extracted_transactions = relationship("ExtractedTransaction", back_populates="email_account")

    __table_args__ = (
        UniqueConstraint("user_id", "provider", "email_address", name="uq_email_account_identity"),
        Index("ix_email_accounts_user_id", "user_id"),
        Index("ix_email_accounts_active_sync", "is_active", "last_sync_at"),
    )
