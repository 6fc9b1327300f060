from sqlalchemy import (
    Column, Integer, String, Text, Numeric, Float, DateTime, ForeignKey,
    UniqueConstraint, Index, Enum as SAEnum,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from mailledger.core.database import Base
from mailledger.core.constants import TransactionKind, ProcessingState


class ExtractedTransaction(Base):
    __tablename__ = "extracted_transactions"

    id = Column(Integer, primary_key=True, index=True)
    email_account_id = Column(Integer, ForeignKey("email_accounts.id"), nullable=False)
    email_message_id = Column(String(255), nullable=False)

    # Source email, retained for audit
    email_subject = Column(String(1000), nullable=True)
    sender_email = Column(String(255), nullable=True)
    raw_email_content = Column(Text, nullable=True)

    # Parsed fields
    transaction_date = Column(DateTime(timezone=True), nullable=True)
    transaction_type = Column(SAEnum(TransactionKind, native_enum=False, length=30), nullable=True)
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    merchant_name = Column(String(255), nullable=True)
    account_number_last4 = Column(String(4), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    transaction_id = Column(String(100), nullable=True)
    reference_number = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    category_suggestion = Column(String(100), nullable=True)
    confidence_score = Column(Float, nullable=False, default=0.0)

    # Materialization
    processing_state = Column(
        SAEnum(ProcessingState, native_enum=False, length=20),
        nullable=False,
        default=ProcessingState.UNPROCESSED,
    )
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_transaction_id = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)

    extracted_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    email_account = relationship("EmailAccount", back_populates="extracted_transactions")

    __table_args__ = (
        UniqueConstraint("email_account_id", "email_message_id", name="uq_extracted_account_message"),
        Index("ix_extracted_state_confidence", "processing_state", "confidence_score"),
        Index("ix_extracted_account_date", "email_account_id", "transaction_date"),
    )
