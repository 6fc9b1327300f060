from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

from mailledger.core.constants import TransactionKind, ProcessingState


# -------------------------- PARSER OUTPUT -----------------------------------

class TransactionCandidate(BaseModel):
    """Fields the parser pulled out of one email, before it is stored"""
    amount: Decimal
    currency: str = "INR"
    transaction_type: TransactionKind = TransactionKind.DEBIT
    merchant_name: Optional[str] = None
    account_number_last4: Optional[str] = None
    card_last4: Optional[str] = None
    transaction_id: Optional[str] = None
    reference_number: Optional[str] = None
    description: Optional[str] = None
    category_suggestion: str = "Other"
    transaction_date: Optional[datetime] = None
    confidence_score: float = Field(..., ge=0.0, le=1.0)

    sender_email: str
    email_subject: Optional[str] = None
    raw_email_content: Optional[str] = None


# -------------------------- RESPONSE SCHEMAS -------------------------------

class ExtractedTransactionResponse(BaseModel):
    id: int
    email_account_id: int
    email_message_id: str
    email_subject: str | None
    sender_email: str | None

    amount: Decimal
    currency: str
    transaction_type: TransactionKind | None
    merchant_name: str | None
    account_number_last4: str | None
    card_last4: str | None
    transaction_id: str | None
    reference_number: str | None
    description: str | None
    category_suggestion: str | None
    transaction_date: datetime | None
    confidence_score: float

    processing_state: ProcessingState
    processed_at: datetime | None
    created_transaction_id: str | None
    error_message: str | None
    extracted_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ExtractedTransactionPage(BaseModel):
    items: list[ExtractedTransactionResponse]
    total: int
    page: int
    size: int


class ApprovalRequest(BaseModel):
    approved: bool = Field(..., description="True creates the ledger transaction, False rejects the candidate")
    notes: Optional[str] = Field(None, max_length=1000)


class ExtractionStats(BaseModel):
    connected_accounts: int
    active_accounts: int
    total_emails_processed: int
    total_transactions_extracted: int
    unprocessed_transactions: int
    extracted_last_24h: int
    average_confidence_last_24h: Optional[float] = None


class SenderListResponse(BaseModel):
    senders: list[str]
