import enum, uuid
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import Column, String, Numeric, DateTime, Enum, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()

CENT = Decimal("0.01")

def generate_uuid() -> str:
    return str(uuid.uuid4())

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    PAYMENT = "payment"
    REFUND = "refund"

class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),)

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), unique=True, nullable=False, index=True)
    # Written only by ledger_service.ledger.Ledger
    balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        Index("ix_transactions_from_created", "from_wallet_id", "created_at"),
        Index("ix_transactions_to_created", "to_wallet_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    from_wallet_id = Column(String(36), ForeignKey("wallets.id"), nullable=True)
    to_wallet_id = Column(String(36), ForeignKey("wallets.id"), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    type = Column(Enum(TransactionType, values_callable=lambda e: [m.value for m in e], native_enum=False, length=16), nullable=False)
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
