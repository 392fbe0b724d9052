import logging
from contextlib import asynccontextmanager
from typing import List
from fastapi import FastAPI, Depends, Request
from common.auth import get_current_user_id
from common.error_handling import Forbidden, add_error_handlers
from common.health import health_router
from common.kafka import EventPublisher, wallet_event_publisher
from common.schemas import WalletEvent
from common.settings import settings
from common.tracing import ledger_tracer, tracing_middleware
from ledger_service.db import engine, init_db
from ledger_service.ledger import Ledger
from ledger_service.models import Transaction
from ledger_service.schemas import DepositRequest, TransferRequest, TransactionOut, WalletOut

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

ledger = Ledger(engine)

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Ledger service started")
    yield

app = FastAPI(title="Ledger Service", version=settings.service_version, lifespan=lifespan)
add_error_handlers(app)
app.include_router(health_router("ledger-service", engine))

@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, ledger_tracer)

def get_ledger() -> Ledger:
    return ledger

def get_publisher() -> EventPublisher:
    return wallet_event_publisher

def publish_committed(publisher: EventPublisher, tx: Transaction, from_user_id, to_user_id: str):
    """Announce a committed transaction; the commit stands even if this fails."""
    event = WalletEvent(
        type="TransferCommitted" if from_user_id else "DepositCommitted",
        transaction_id=tx.id,
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        amount=tx.amount,
        description=tx.description,
        created_at=tx.created_at,
    )
    if publisher.publish(event, key=tx.id):
        logger.info(f"Published {event.type} for {tx.id}")

@app.get("/wallets/me", response_model=WalletOut)
def my_wallet(user_id: str = Depends(get_current_user_id), ledger: Ledger = Depends(get_ledger)):
    return ledger.get_wallet(user_id)

@app.get("/wallets/{wallet_user_id}", response_model=WalletOut)
def wallet_balance(wallet_user_id: str, user_id: str = Depends(get_current_user_id), ledger: Ledger = Depends(get_ledger)):
    if wallet_user_id != user_id:
        # Checked before the lookup so no wallet is created for another user
        raise Forbidden("You are not authorized to view this wallet")
    return ledger.get_wallet(wallet_user_id)

@app.post("/wallets/deposit", response_model=TransactionOut, status_code=201)
def deposit(
    req: DepositRequest,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
    publisher: EventPublisher = Depends(get_publisher),
):
    tx = ledger.deposit(user_id, req.amount, req.description)
    publish_committed(publisher, tx, None, user_id)
    return tx

@app.post("/transfers", response_model=TransactionOut, status_code=201)
def transfer(
    req: TransferRequest,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
    publisher: EventPublisher = Depends(get_publisher),
):
    tx = ledger.transfer(user_id, req.to_user_id, req.amount, req.description)
    publish_committed(publisher, tx, user_id, req.to_user_id)
    return tx

@app.get("/transactions/me", response_model=List[TransactionOut])
def transaction_history(user_id: str = Depends(get_current_user_id), ledger: Ledger = Depends(get_ledger)):
    return ledger.get_history(user_id)
