"""
Wallet ledger: balances and the append-only transaction history.

Every mutation runs as one atomic unit (a session transaction) that either
commits the balance changes together with their Transaction row or rolls back
entirely. Correctness under concurrency comes from the store: wallet rows are
locked with SELECT ... FOR UPDATE in ascending id order, and store conflicts
(deadlocks, serialization failures, lock timeouts) retry the whole unit.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, List, Optional, TypeVar

from sqlalchemy import or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from common.error_handling import Conflict, StoreUnavailable
from common.retry import RetryConfig, retry_call
from common.settings import settings
from ledger_service.errors import InsufficientBalance, InvalidAmount, SameWalletError, WalletNotFound
from ledger_service.models import CENT, Transaction, TransactionType, Wallet

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Largest value a NUMERIC(12, 2) column holds
MAX_BALANCE = Decimal("9999999999.99")

def default_retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=settings.ledger_retry_attempts,
        base_delay=settings.ledger_retry_base_delay,
        max_delay=1.0,
        retryable_exceptions=[Conflict],
    )

def normalize_amount(amount) -> Decimal:
    """Validate a monetary amount and return it as a 2-place Decimal."""
    if isinstance(amount, bool):
        raise InvalidAmount("amount must be a number", field="amount")
    if isinstance(amount, float):
        amount = repr(amount)
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"amount is not a valid number: {amount!r}", field="amount")

    if not value.is_finite() or value <= 0:
        raise InvalidAmount("amount must be greater than zero", field="amount")
    if value != value.quantize(CENT):
        raise InvalidAmount("amount must have at most two decimal places", field="amount")
    if value > MAX_BALANCE:
        raise InvalidAmount(f"amount must not exceed {MAX_BALANCE}", field="amount")
    return value.quantize(CENT)

class Ledger:
    def __init__(self, engine: Engine, retry_config: Optional[RetryConfig] = None):
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        self.retry_config = retry_config or default_retry_config()

    # atomic units

    def _atomic(self, unit: Callable[[Session], T]) -> T:
        """Run unit in its own transaction, retrying the whole unit on Conflict."""
        try:
            return retry_call(self._attempt, self.retry_config, unit)
        except Conflict as e:
            raise StoreUnavailable(
                f"ledger store unavailable after {self.retry_config.max_attempts} attempts",
                original_error=e.original_error,
            ) from e

    def _attempt(self, unit: Callable[[Session], T]) -> T:
        try:
            with self.session_factory() as session, session.begin():
                return unit(session)
        except OperationalError as e:
            raise Conflict(f"store conflict: {e.orig}", original_error=e) from e
        except SQLAlchemyError as e:
            if getattr(e, "connection_invalidated", False):
                raise Conflict(f"store connection lost: {e}", original_error=e) from e
            raise StoreUnavailable(f"store failure: {e}", original_error=e) from e

    # row access

    @staticmethod
    def _find_wallet(session: Session, user_id: str) -> Optional[Wallet]:
        return session.execute(select(Wallet).where(Wallet.user_id == user_id)).scalar_one_or_none()

    def _resolve_or_create(self, session: Session, user_id: str) -> Wallet:
        wallet = self._find_wallet(session, user_id)
        if wallet is not None:
            return wallet
        try:
            with session.begin_nested():
                wallet = Wallet(user_id=user_id, balance=Decimal("0.00"))
                session.add(wallet)
        except IntegrityError as e:
            # A concurrent unit created it first
            wallet = self._find_wallet(session, user_id)
            if wallet is None:
                # Not visible from this snapshot; retry the whole unit
                raise Conflict(f"wallet for {user_id} created concurrently", original_error=e) from e
            return wallet
        logger.info("Created wallet", extra={"wallet_id": wallet.id, "user_id": user_id})
        return wallet

    @staticmethod
    def _lock_wallets(session: Session, wallet_ids: Iterable[str]) -> dict:
        # Ascending id order so opposing transfers never deadlock
        stmt = (
            select(Wallet)
            .where(Wallet.id.in_(sorted(set(wallet_ids))))
            .order_by(Wallet.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {w.id: w for w in session.execute(stmt).scalars()}

    # operations

    def get_or_create_wallet(self, user_id: str) -> Wallet:
        return self._atomic(lambda session: self._resolve_or_create(session, user_id))

    get_wallet = get_or_create_wallet

    def deposit(self, user_id: str, amount, description: Optional[str] = None) -> Transaction:
        amount = normalize_amount(amount)

        def unit(session: Session) -> Transaction:
            wallet = self._resolve_or_create(session, user_id)
            wallet = self._lock_wallets(session, [wallet.id])[wallet.id]
            new_balance = (wallet.balance + amount).quantize(CENT)
            if new_balance > MAX_BALANCE:
                raise InvalidAmount("deposit would exceed the maximum wallet balance", field="amount")
            wallet.balance = new_balance
            tx = Transaction(
                type=TransactionType.DEPOSIT,
                to_wallet_id=wallet.id,
                amount=amount,
                description=description,
            )
            session.add(tx)
            session.flush()
            return tx

        tx = self._atomic(unit)
        logger.info(f"Deposit committed: {amount} to {user_id}", extra={"transaction_id": tx.id})
        return tx

    def transfer(self, from_user_id: str, to_user_id: str, amount, description: Optional[str] = None) -> Transaction:
        amount = normalize_amount(amount)
        if from_user_id == to_user_id:
            raise SameWalletError("Cannot transfer to the same wallet")

        def unit(session: Session) -> Transaction:
            sender = self._find_wallet(session, from_user_id)
            if sender is None:
                raise WalletNotFound("Sender wallet not found", context={"user_id": from_user_id})
            receiver = self._resolve_or_create(session, to_user_id)

            locked = self._lock_wallets(session, [sender.id, receiver.id])
            sender, receiver = locked[sender.id], locked[receiver.id]

            if sender.balance < amount:
                raise InsufficientBalance(
                    "Insufficient balance",
                    context={"balance": str(sender.balance), "amount": str(amount)},
                )
            credited = (receiver.balance + amount).quantize(CENT)
            if credited > MAX_BALANCE:
                raise InvalidAmount("transfer would exceed the receiver's maximum wallet balance", field="amount")

            sender.balance = (sender.balance - amount).quantize(CENT)
            receiver.balance = credited
            tx = Transaction(
                type=TransactionType.TRANSFER,
                from_wallet_id=sender.id,
                to_wallet_id=receiver.id,
                amount=amount,
                description=description,
            )
            session.add(tx)
            session.flush()
            return tx

        tx = self._atomic(unit)
        logger.info(f"Transfer committed: {amount} from {from_user_id} to {to_user_id}", extra={"transaction_id": tx.id})
        return tx

    def get_history(self, user_id: str) -> List[Transaction]:
        def unit(session: Session) -> List[Transaction]:
            wallet = self._resolve_or_create(session, user_id)
            stmt = (
                select(Transaction)
                .where(or_(Transaction.from_wallet_id == wallet.id, Transaction.to_wallet_id == wallet.id))
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            )
            return list(session.execute(stmt).scalars())

        return self._atomic(unit)
