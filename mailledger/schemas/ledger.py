from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_serializer

from mailledger.core.constants import LedgerTransactionType


class LedgerTransactionCreate(BaseModel):
    """Body of the ledger's create-transaction endpoint (camelCase on the wire)"""
    amount: Decimal
    type: LedgerTransactionType = Field(..., serialization_alias="transactionType")
    description: str
    transaction_date: datetime = Field(..., serialization_alias="transactionDate")
    category_id: Optional[str] = Field(None, serialization_alias="categoryId")
    category_name: Optional[str] = Field(None, serialization_alias="categoryName")
    merchant_name: Optional[str] = Field(None, serialization_alias="merchantName")
    notes: Optional[str] = None
    source: str = "api"
    tags: list[str] = Field(default_factory=list)
    account_name: str = Field(..., serialization_alias="accountName")
    payment_method: str = Field(..., serialization_alias="paymentMethod")

    model_config = ConfigDict(use_enum_values=True)

    @field_serializer("amount")
    def serialize_amount(self, amount: Decimal) -> float:
        return float(amount)

    @field_serializer("transaction_date")
    def serialize_date(self, value: datetime) -> str:
        return value.isoformat()
