import logging, math
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from fastapi import FastAPI, Depends, Query, Request
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.orm import Session
from common.auth import get_current_user_id
from common.error_handling import add_error_handlers
from common.health import health_router
from common.settings import settings
from common.tracing import audit_tracer, tracing_middleware
from audit_service.db import engine, get_db, init_db
from audit_service.models import AuditLog, utcnow

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

TOP_ACTIONS = 10

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield

app = FastAPI(title="Audit Service", version=settings.service_version, lifespan=lifespan)
add_error_handlers(app)
app.include_router(health_router("audit-service", engine))

@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, audit_tracer)

class CreateLog(BaseModel):
    user_id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    action: str = Field(min_length=1, max_length=128)
    metadata: Dict[str, Any] = Field(default_factory=dict)

class LogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: Optional[str] = None
    action: str
    # Read from the ORM attribute, or from the field name when FastAPI re-validates a dump
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("details", "metadata"))
    timestamp: datetime

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

class LogPage(BaseModel):
    logs: List[LogOut]
    pagination: Pagination

class ActionCount(BaseModel):
    action: str
    count: int

class LogAnalytics(BaseModel):
    total_logs: int
    top_actions: List[ActionCount]
    generated_at: datetime

def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def paginate(db: Session, conditions: list, page: int, limit: int) -> LogPage:
    """Newest first"""
    total = db.execute(select(func.count()).select_from(AuditLog).where(*conditions)).scalar_one()
    stmt = (
        select(AuditLog)
        .where(*conditions)
        .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    logs = [LogOut.model_validate(log) for log in db.execute(stmt).scalars()]
    return LogPage(
        logs=logs,
        pagination=Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)),
    )

@app.post("/logs", response_model=LogOut, status_code=201)
def create_log(req: CreateLog, _: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    log = AuditLog(user_id=req.user_id, action=req.action, details=req.metadata, timestamp=utcnow())
    db.add(log)
    db.commit()
    logger.info("Audit log created", extra={"log_id": log.id, "action": log.action, "subject": log.user_id})
    return LogOut.model_validate(log)

@app.get("/logs", response_model=LogPage)
def list_logs(
    action: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    _: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    conditions = []
    if action:
        conditions.append(AuditLog.action == action)
    if start_date is not None:
        conditions.append(AuditLog.timestamp >= as_utc(start_date))
    if end_date is not None:
        conditions.append(AuditLog.timestamp <= as_utc(end_date))
    return paginate(db, conditions, page, limit)

@app.get("/logs/user/{user_id}", response_model=LogPage)
def user_logs(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    _: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return paginate(db, [AuditLog.user_id == user_id], page, limit)

@app.get("/logs/search", response_model=LogPage)
def search_logs(
    q: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    _: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    # Case-insensitive substring match on the action or anywhere in the metadata
    term = q.lower()
    matches = or_(
        func.lower(AuditLog.action).contains(term, autoescape=True),
        func.lower(cast(AuditLog.details, String)).contains(term, autoescape=True),
    )
    return paginate(db, [matches], page, limit)

@app.get("/logs/analytics", response_model=LogAnalytics)
def log_analytics(_: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    count = func.count(AuditLog.id).label("count")
    stmt = (
        select(AuditLog.action, count)
        .group_by(AuditLog.action)
        .order_by(count.desc(), AuditLog.action)
        .limit(TOP_ACTIONS)
    )
    top_actions = [ActionCount(action=action, count=n) for action, n in db.execute(stmt)]
    total = db.execute(select(func.count()).select_from(AuditLog)).scalar_one()
    return LogAnalytics(total_logs=total, top_actions=top_actions, generated_at=datetime.now(timezone.utc))
