import asyncio, json, logging, threading
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional
import jwt
from confluent_kafka import TopicPartition
from fastapi import FastAPI, Depends, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from common.auth import get_current_user_id
from common.error_handling import add_error_handlers
from common.health import health_router
from common.kafka import get_consumer, TOPIC_WALLET_EVENTS
from common.redis_client import RedisClient, redis_client
from common.schemas import WalletEvent
from common.security import verify_token
from common.settings import settings
from common.tracing import SPAN_HEADER, TRACE_HEADER, notification_tracer, tracing_middleware
from notification_service.db import SessionLocal, engine, get_db, init_db
from notification_service.hub import ConnectionHub, hub
from notification_service.models import Notification, new_id, utcnow

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

STORE_RETRY_SECONDS = 1.0

class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    transaction_id: Optional[str] = None
    type: str
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

class NotifyRequest(BaseModel):
    # No user_id means broadcast to every connected client
    user_id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    type: str = Field(min_length=1, max_length=64)
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)

class NotifyResult(BaseModel):
    id: str
    status: str = "sent"
    delivered: int
    timestamp: datetime

class ConnectionStats(BaseModel):
    total_connections: int
    user_id: Optional[str] = None
    user_connections: Optional[int] = None

def build_notifications(event: WalletEvent) -> List[Notification]:
    data = {"transaction_id": event.transaction_id, "amount": f"{event.amount:.2f}"}

    def notification(user_id: str, type_: str, title: str, message: str) -> Notification:
        return Notification(
            id=new_id(), user_id=user_id, transaction_id=event.transaction_id,
            type=type_, title=title, message=message, data=data, created_at=utcnow(),
        )

    if event.type == "DepositCommitted":
        return [notification(
            event.to_user_id, "wallet.deposit", "Deposit received",
            f"{event.amount:.2f} was added to your wallet",
        )]
    return [
        notification(
            event.from_user_id, "wallet.transfer.sent", "Transfer sent",
            f"You sent {event.amount:.2f} to {event.to_user_id}",
        ),
        notification(
            event.to_user_id, "wallet.transfer.received", "Transfer received",
            f"You received {event.amount:.2f} from {event.from_user_id}",
        ),
    ]

def store_notifications(session_factory: sessionmaker, notifications: List[Notification]) -> bool:
    """Persist notifications together; False when an earlier delivery already stored them"""
    with session_factory() as db:
        db.add_all(notifications)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return False
    return True

def push(notification: Notification, connections: ConnectionHub) -> None:
    payload = NotificationOut.model_validate(notification).model_dump(mode="json")
    connections.deliver_threadsafe(notification.user_id, payload)

def handle_event(
    event: WalletEvent,
    dedup: RedisClient,
    session_factory: sessionmaker = SessionLocal,
    connections: ConnectionHub = hub,
) -> List[Notification]:
    """Store and push a notification for every user involved in event, once per transaction.

    Redis screens out most redeliveries; the unique (transaction_id, user_id)
    constraint catches the rest, including any that slip past while Redis is down.
    A store failure clears the dedup mark and propagates so the event can be retried.
    """
    key = f"notif:{event.transaction_id}"
    if not dedup.mark_once(key, settings.notification_dedup_ttl_seconds):
        logger.info(f"Skipping duplicate event for {event.transaction_id}")
        return []
    notifications = build_notifications(event)
    try:
        stored = store_notifications(session_factory, notifications)
    except SQLAlchemyError:
        dedup.forget(key)
        raise
    if not stored:
        logger.info(f"Notifications for {event.transaction_id} were already stored")
        return []
    for n in notifications:
        logger.info(f"[NOTIFY] {n.user_id}: {n.title} - {n.message}")
        push(n, connections)
    return notifications

def parse_event(raw: bytes) -> Optional[WalletEvent]:
    try:
        return WalletEvent.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        logger.error(f"Dropping malformed wallet event: {e}")
        return None

def process_message(msg, dedup: RedisClient, session_factory: sessionmaker, connections: ConnectionHub) -> None:
    headers = {k: v.decode("utf-8") for k, v in (msg.headers() or []) if v is not None}
    with notification_tracer.span("consume wallet_events", headers.get(TRACE_HEADER), headers.get(SPAN_HEADER)):
        event = parse_event(msg.value())
        if event is not None:
            handle_event(event, dedup, session_factory, connections)

def consume(
    stop: threading.Event,
    consumer=None,
    dedup: RedisClient = redis_client,
    session_factory: sessionmaker = SessionLocal,
    connections: ConnectionHub = hub,
):
    c = consumer or get_consumer("notification-service", [TOPIC_WALLET_EVENTS])
    try:
        while not stop.is_set():
            msg = c.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                logger.warning(f"Consumer error: {msg.error()}")
                continue
            try:
                process_message(msg, dedup, session_factory, connections)
            except SQLAlchemyError as e:
                # Leave the offset uncommitted and rewind so the event comes back
                logger.error(f"Notification store failed at {msg.topic()}[{msg.partition()}]@{msg.offset()}: {e}")
                c.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))
                stop.wait(STORE_RETRY_SECONDS)
                continue
            c.commit(message=msg)
    finally:
        c.close()

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    hub.bind(asyncio.get_running_loop())
    stop = threading.Event()
    consumer_thread = None
    if settings.events_enabled:
        consumer_thread = threading.Thread(target=consume, args=(stop,), daemon=True, name="wallet-events")
        consumer_thread.start()
        logger.info("Notification consumer started")
    yield
    stop.set()
    if consumer_thread is not None:
        await asyncio.to_thread(consumer_thread.join, settings.consumer_shutdown_timeout_seconds)
        if consumer_thread.is_alive():
            logger.warning("Notification consumer did not stop in time")
        else:
            logger.info("Notification consumer stopped")

app = FastAPI(title="Notification Service", version=settings.service_version, lifespan=lifespan)
add_error_handlers(app)
app.include_router(health_router("notification-service", engine))

@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, notification_tracer)

def get_session_factory() -> sessionmaker:
    return SessionLocal

@app.websocket("/ws")
async def notification_socket(websocket: WebSocket, token: str = Query(...)):
    try:
        user_id = verify_token(token)["sub"]
    except jwt.InvalidTokenError as e:
        logger.warning(f"Rejected websocket connection: {e}")
        await websocket.close(code=1008)
        return
    await hub.connect(user_id, websocket)
    try:
        await websocket.send_json({"type": "connected", "user_id": user_id})
        # Clients only listen; inbound frames are read to notice disconnects
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"Websocket closed by {user_id}")
    finally:
        hub.disconnect(user_id, websocket)

@app.post("/notify", response_model=NotifyResult)
async def notify(
    req: NotifyRequest,
    _: str = Depends(get_current_user_id),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    notification = Notification(
        id=new_id(), user_id=req.user_id, type=req.type, title=req.title,
        message=req.message, data=req.data, created_at=utcnow(),
    )
    payload = NotificationOut.model_validate(notification).model_dump(mode="json")
    if req.user_id is None:
        delivered = await hub.broadcast(payload)
    else:
        await run_in_threadpool(store_notifications, session_factory, [notification])
        delivered = await hub.send_to_user(req.user_id, payload)
    logger.info(f"Notification {notification.id} delivered to {delivered} connection(s)")
    return NotifyResult(id=notification.id, delivered=delivered, timestamp=notification.created_at)

@app.get("/connections", response_model=ConnectionStats, response_model_exclude_none=True)
async def connections(user_id: Optional[str] = None, _: str = Depends(get_current_user_id)):
    stats = ConnectionStats(total_connections=hub.connection_count())
    if user_id is not None:
        stats.user_id = user_id
        stats.user_connections = hub.connection_count(user_id)
    return stats

@app.get("/notifications/me", response_model=List[NotificationOut])
def my_notifications(
    limit: int = Query(50, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    stmt = (
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc())
        .limit(limit)
    )
    return db.execute(stmt).scalars().all()
