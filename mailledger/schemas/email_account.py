from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional

from mailledger.core.constants import MailProvider


class AuthorizationResponse(BaseModel):
    authorization_url: str = Field(..., description="Provider consent page to redirect the user to")
    state: str = Field(..., description="Single-use state correlating the callback with the user")


class EmailAccountResponse(BaseModel):
    """Connected mailbox as shown to its owner. Token material is never exposed."""
    id: int
    provider: MailProvider
    email_address: str
    is_active: bool
    status: str = Field(..., description="Connected / Needs Refresh / Token Expired / Disconnected")
    token_expires_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    sync_from_date: Optional[datetime] = None
    total_emails_processed: int = 0
    total_transactions_extracted: int = 0
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class EmailAccountListResponse(BaseModel):
    accounts: list[EmailAccountResponse]
    total: int


class SyncRequestedResponse(BaseModel):
    account_id: int
    task_id: Optional[str] = None
    message: str
