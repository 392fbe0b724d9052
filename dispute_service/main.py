import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
from fastapi import FastAPI, Depends, Request, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from common.auth import get_current_user_id
from common.authorization import authorize
from common.error_handling import BusinessLogicError, ErrorCodes, NotFound, add_error_handlers
from common.health import health_router
from common.settings import settings
from common.tracing import dispute_tracer, tracing_middleware
from dispute_service.db import engine, get_db, init_db
from dispute_service.models import Dispute, DisputeStatus, utcnow

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield

app = FastAPI(title="Dispute Service", version=settings.service_version, lifespan=lifespan)
add_error_handlers(app)
app.include_router(health_router("dispute-service", engine))

@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, dispute_tracer)

class CreateDispute(BaseModel):
    contract_id: str = Field(min_length=1, max_length=36)
    description: str = Field(min_length=1)

class ResolveDispute(BaseModel):
    resolution: str = Field(min_length=1)

class UpdateDispute(BaseModel):
    description: Optional[str] = Field(default=None, min_length=1)
    status: Optional[DisputeStatus] = None
    resolution: Optional[str] = None

class DisputeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    contract_id: str
    raised_by: str
    description: str
    status: DisputeStatus
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

def is_dispute_raiser(dispute: Dispute, user_id: str) -> bool:
    return dispute.raised_by == user_id

def load_dispute(db: Session, dispute_id: str) -> Dispute:
    dispute = db.get(Dispute, dispute_id)
    if dispute is None:
        raise NotFound("Dispute not found", code=ErrorCodes.DISPUTE_NOT_FOUND)
    return dispute

def ensure_unsettled(dispute: Dispute, message: str) -> Dispute:
    """message may use {status}"""
    if dispute.settled:
        raise BusinessLogicError(message.format(status=dispute.status.value.lower()), code=ErrorCodes.DISPUTE_RESOLVED)
    return dispute

def mark_resolved(dispute: Dispute, user_id: str, resolution: Optional[str]) -> None:
    dispute.move_to(DisputeStatus.RESOLVED)
    dispute.resolution = resolution
    dispute.resolved_by = user_id
    dispute.resolved_at = utcnow()

def find_unsettled(db: Session, contract_id: str) -> Optional[Dispute]:
    return db.execute(select(Dispute).where(Dispute.open_contract_id == contract_id)).scalars().first()

def open_dispute_exists(existing: Optional[Dispute]) -> BusinessLogicError:
    return BusinessLogicError(
        "An open dispute already exists for this contract",
        code=ErrorCodes.OPEN_DISPUTE_EXISTS,
        context={"dispute_id": existing.id if existing else None},
    )

def open_dispute(db: Session, contract_id: str, user_id: str, description: str) -> Dispute:
    """Raise a dispute; the unique open_contract_id index settles concurrent attempts"""
    existing = find_unsettled(db, contract_id)
    if existing is not None:
        raise open_dispute_exists(existing)
    dispute = Dispute(contract_id=contract_id, raised_by=user_id, description=description)
    dispute.move_to(DisputeStatus.OPEN)
    db.add(dispute)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise open_dispute_exists(find_unsettled(db, contract_id))
    return dispute

@app.post("/disputes", response_model=DisputeOut, status_code=201)
def create_dispute(req: CreateDispute, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    dispute = open_dispute(db, req.contract_id, user_id, req.description)
    logger.info("Dispute raised", extra={"dispute_id": dispute.id, "contract_id": dispute.contract_id})
    return dispute

@app.get("/disputes/user/me", response_model=List[DisputeOut])
def my_disputes(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    stmt = select(Dispute).where(Dispute.raised_by == user_id).order_by(Dispute.created_at.desc())
    return db.execute(stmt).scalars().all()

@app.get("/disputes/contract/{contract_id}", response_model=List[DisputeOut])
def contract_disputes(contract_id: str, _: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    stmt = select(Dispute).where(Dispute.contract_id == contract_id).order_by(Dispute.created_at.desc())
    return db.execute(stmt).scalars().all()

@app.get("/disputes/{dispute_id}", response_model=DisputeOut)
def get_dispute(dispute_id: str, _: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return load_dispute(db, dispute_id)

@app.post("/disputes/{dispute_id}/resolve", response_model=DisputeOut)
def resolve_dispute(
    dispute_id: str,
    req: ResolveDispute,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    # Any authenticated user may resolve
    dispute = ensure_unsettled(load_dispute(db, dispute_id), "Dispute is already {status}")
    mark_resolved(dispute, user_id, req.resolution)
    db.commit()
    logger.info("Dispute resolved", extra={"dispute_id": dispute.id, "resolved_by": user_id})
    return dispute

@app.patch("/disputes/{dispute_id}", response_model=DisputeOut)
def update_dispute(
    dispute_id: str,
    req: UpdateDispute,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    dispute = authorize(load_dispute(db, dispute_id), user_id, is_dispute_raiser, "update")
    ensure_unsettled(dispute, "Cannot update a {status} dispute")
    changes = req.model_dump(exclude_unset=True, exclude_none=True)
    status = changes.pop("status", None)
    resolution = changes.pop("resolution", None)
    for field, value in changes.items():
        setattr(dispute, field, value)
    if status == DisputeStatus.RESOLVED:
        mark_resolved(dispute, user_id, resolution or dispute.resolution)
    else:
        if resolution is not None:
            dispute.resolution = resolution
        if status is not None:
            dispute.move_to(status)
    db.commit()
    return dispute

@app.delete("/disputes/{dispute_id}", status_code=204)
def delete_dispute(dispute_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    dispute = authorize(load_dispute(db, dispute_id), user_id, is_dispute_raiser, "delete")
    ensure_unsettled(dispute, "Cannot delete a {status} dispute")
    db.delete(dispute)
    db.commit()
    return Response(status_code=204)
