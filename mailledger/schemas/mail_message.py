from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional


class TokenGrant(BaseModel):
    """Tokens returned by a provider's code exchange or refresh"""
    access_token: str
    refresh_token: Optional[str] = Field(None, description="Absent when the provider does not rotate it")
    expires_in: int = Field(3600, description="Access token lifetime in seconds")


class MailMessage(BaseModel):
    message_id: str
    subject: str = ""
    sender: str = ""
    body: str = ""
    received_at: Optional[datetime] = None
