from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel
from typing import Literal, Optional

class WalletEvent(BaseModel):
    type: Literal["DepositCommitted", "TransferCommitted"]
    transaction_id: str
    from_user_id: Optional[str] = None
    to_user_id: str
    amount: Decimal
    description: Optional[str] = None
    created_at: datetime

class HealthStatus(BaseModel):
    service: str
    status: Literal["healthy", "degraded"]
    timestamp: datetime
    uptime: int
    version: str
    database: Optional[Literal["ok", "error"]] = None
