import enum, uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, DateTime, Enum
from sqlalchemy.orm import declarative_base

Base = declarative_base()

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class DisputeStatus(str, enum.Enum):
    OPEN = "OPEN"
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"

# Settled disputes are frozen and no longer count against their contract
SETTLED_STATUSES = frozenset({DisputeStatus.RESOLVED, DisputeStatus.CLOSED})

class Dispute(Base):
    __tablename__ = "disputes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    contract_id = Column(String(36), nullable=False, index=True)
    # Equals contract_id while unsettled, NULL once settled; the unique index
    # allows one unsettled dispute per contract
    open_contract_id = Column(String(36), nullable=True, unique=True)
    raised_by = Column(String(64), nullable=False, index=True)
    description = Column(Text, nullable=False)
    status = Column(Enum(DisputeStatus, native_enum=False, length=16), nullable=False, default=DisputeStatus.OPEN)
    resolution = Column(Text, nullable=True)
    resolved_by = Column(String(64), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    def move_to(self, status: DisputeStatus) -> None:
        self.status = status
        self.open_contract_id = None if status in SETTLED_STATUSES else self.contract_id
