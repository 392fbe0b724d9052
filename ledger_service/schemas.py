from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_serializer
from ledger_service.models import TransactionType

class DepositRequest(BaseModel):
    amount: Decimal
    description: Optional[str] = Field(default=None, max_length=255)

class TransferRequest(BaseModel):
    to_user_id: str = Field(min_length=1, max_length=64)
    amount: Decimal
    description: Optional[str] = Field(default=None, max_length=255)

class WalletOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    balance: Decimal
    created_at: datetime
    updated_at: datetime

    @field_serializer("balance")
    def _money(self, value: Decimal) -> str:
        return f"{value:.2f}"

class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    from_wallet_id: Optional[str] = None
    to_wallet_id: Optional[str] = None
    amount: Decimal
    type: TransactionType
    description: Optional[str] = None
    created_at: datetime

    @field_serializer("amount")
    def _money(self, value: Decimal) -> str:
        return f"{value:.2f}"
