"""
Ledger behaviour against a real SQLite store: balances, history,
atomicity, retries and concurrent transfers.
"""
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest import mock

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, ProgrammingError

from common.error_handling import Conflict, StoreUnavailable
from common.retry import RetryConfig
from ledger_service.errors import InsufficientBalance, InvalidAmount, SameWalletError, WalletNotFound
from ledger_service.ledger import Ledger, normalize_amount
from ledger_service.models import Base, Transaction, TransactionType, Wallet
from support import StoreTestCase


class LedgerTestCase(StoreTestCase):
    metadata = Base.metadata

    def setUp(self):
        super().setUp()
        self.ledger = Ledger(
            self.engine,
            RetryConfig(max_attempts=3, base_delay=0, jitter=False, retryable_exceptions=[Conflict]),
        )

    def balance(self, user_id: str) -> Decimal:
        return self.ledger.get_or_create_wallet(user_id).balance

    def transaction_count(self) -> int:
        with self.Session() as s:
            return s.scalar(select(func.count()).select_from(Transaction))

    def wallet_count(self, user_id: str) -> int:
        with self.Session() as s:
            return s.scalar(select(func.count()).select_from(Wallet).where(Wallet.user_id == user_id))


class TestWallets(LedgerTestCase):

    def test_get_or_create_is_idempotent(self):
        first = self.ledger.get_or_create_wallet("alice")
        second = self.ledger.get_or_create_wallet("alice")

        self.assertEqual(first.id, second.id)
        self.assertEqual(second.balance, Decimal("0.00"))
        self.assertEqual(self.wallet_count("alice"), 1)

    def test_get_or_create_never_changes_balance(self):
        self.ledger.deposit("alice", "25.50")
        for _ in range(3):
            self.assertEqual(self.ledger.get_or_create_wallet("alice").balance, Decimal("25.50"))

    def test_concurrent_first_touch_creates_one_wallet(self):
        barrier = threading.Barrier(8)

        def touch(_):
            barrier.wait()
            return self.ledger.get_or_create_wallet("carol").id

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = set(pool.map(touch, range(8)))

        self.assertEqual(len(ids), 1)
        self.assertEqual(self.wallet_count("carol"), 1)


class TestDeposit(LedgerTestCase):

    def test_deposit_credits_balance_and_records_transaction(self):
        tx = self.ledger.deposit("alice", Decimal("100"), "salary")

        wallet = self.ledger.get_wallet("alice")
        self.assertEqual(wallet.balance, Decimal("100.00"))
        self.assertEqual(tx.type, TransactionType.DEPOSIT)
        self.assertEqual(tx.amount, Decimal("100.00"))
        self.assertEqual(tx.to_wallet_id, wallet.id)
        self.assertIsNone(tx.from_wallet_id)
        self.assertEqual(tx.description, "salary")
        self.assertEqual(self.transaction_count(), 1)

    def test_deposit_creates_wallet_lazily(self):
        self.assertEqual(self.wallet_count("dave"), 0)
        self.ledger.deposit("dave", "5.00")
        self.assertEqual(self.wallet_count("dave"), 1)

    def test_repeated_deposits_add_exactly(self):
        for amount in ("0.10", "0.20", "0.30"):
            self.ledger.deposit("alice", amount)
        self.assertEqual(self.balance("alice"), Decimal("0.60"))
        self.assertEqual(self.transaction_count(), 3)

    def test_non_positive_amounts_are_rejected_without_side_effects(self):
        for amount in (0, -1, "-0.01", "0.00"):
            with self.subTest(amount=amount):
                with self.assertRaises(InvalidAmount):
                    self.ledger.deposit("alice", amount)
        self.assertEqual(self.wallet_count("alice"), 0)
        self.assertEqual(self.transaction_count(), 0)

    def test_rolls_back_balance_when_transaction_insert_fails(self):
        self.ledger.deposit("alice", "10.00")

        with mock.patch("ledger_service.ledger.Transaction", side_effect=RuntimeError("insert failed")):
            with self.assertRaises(RuntimeError):
                self.ledger.deposit("alice", "5.00")

        self.assertEqual(self.balance("alice"), Decimal("10.00"))
        self.assertEqual(self.transaction_count(), 1)


class TestTransfer(LedgerTestCase):

    def test_deposit_then_transfer_scenario(self):
        self.ledger.deposit("alice", "100")
        tx = self.ledger.transfer("alice", "bob", "30", "rent")

        alice = self.ledger.get_wallet("alice")
        bob = self.ledger.get_wallet("bob")
        self.assertEqual(alice.balance, Decimal("70.00"))
        self.assertEqual(bob.balance, Decimal("30.00"))
        self.assertEqual(tx.type, TransactionType.TRANSFER)
        self.assertEqual(tx.from_wallet_id, alice.id)
        self.assertEqual(tx.to_wallet_id, bob.id)
        self.assertEqual(tx.amount, Decimal("30.00"))

        with self.assertRaises(InsufficientBalance):
            self.ledger.transfer("alice", "bob", "1000")
        self.assertEqual(self.balance("alice"), Decimal("70.00"))
        self.assertEqual(self.balance("bob"), Decimal("30.00"))
        self.assertEqual(self.transaction_count(), 2)

    def test_transfer_conserves_total(self):
        self.ledger.deposit("alice", "80.25")
        self.ledger.deposit("bob", "19.75")
        before = self.balance("alice") + self.balance("bob")

        self.ledger.transfer("bob", "alice", "19.74")

        self.assertEqual(self.balance("alice") + self.balance("bob"), before)
        self.assertEqual(self.balance("bob"), Decimal("0.01"))

    def test_transfer_of_entire_balance_is_allowed(self):
        self.ledger.deposit("alice", "40")
        self.ledger.transfer("alice", "bob", "40")
        self.assertEqual(self.balance("alice"), Decimal("0.00"))

    def test_self_transfer_always_fails(self):
        self.ledger.deposit("alice", "50")
        with self.assertRaises(SameWalletError):
            self.ledger.transfer("alice", "alice", "10")
        with self.assertRaises(SameWalletError):
            self.ledger.transfer("nobody", "nobody", "10")
        self.assertEqual(self.balance("alice"), Decimal("50.00"))

    def test_sender_without_wallet_is_not_created(self):
        with self.assertRaises(WalletNotFound):
            self.ledger.transfer("ghost", "bob", "1")
        self.assertEqual(self.wallet_count("ghost"), 0)
        self.assertEqual(self.wallet_count("bob"), 0)

    def test_failed_transfer_does_not_create_receiver_wallet(self):
        self.ledger.deposit("alice", "5")
        with self.assertRaises(InsufficientBalance):
            self.ledger.transfer("alice", "newcomer", "6")
        self.assertEqual(self.wallet_count("newcomer"), 0)

    def test_invalid_amount_is_rejected_before_any_lookup(self):
        self.ledger.deposit("alice", "5")
        for amount in (0, "-3", "1.234", "NaN"):
            with self.subTest(amount=amount):
                with self.assertRaises(InvalidAmount):
                    self.ledger.transfer("alice", "bob", amount)
        self.assertEqual(self.balance("alice"), Decimal("5.00"))
        self.assertEqual(self.transaction_count(), 1)


class TestHistory(LedgerTestCase):

    def test_history_is_complete_and_newest_first(self):
        self.ledger.deposit("alice", "100", "first")
        self.ledger.transfer("alice", "bob", "10", "second")
        self.ledger.deposit("bob", "3", "unrelated to alice")
        self.ledger.transfer("bob", "alice", "4", "third")

        history = self.ledger.get_history("alice")

        self.assertEqual([t.description for t in history], ["third", "second", "first"])
        self.assertEqual(len(self.ledger.get_history("bob")), 3)

    def test_history_of_new_user_is_empty_and_creates_wallet(self):
        self.assertEqual(self.ledger.get_history("erin"), [])
        self.assertEqual(self.wallet_count("erin"), 1)


class TestRetries(LedgerTestCase):

    def _flaky_find(self, failures: int, error=None):
        real = Ledger._find_wallet
        calls = {"n": 0}

        def find(session, user_id):
            calls["n"] += 1
            if calls["n"] <= failures:
                raise error or OperationalError("SELECT wallets", {}, Exception("database is locked"))
            return real(session, user_id)

        return staticmethod(find), calls

    def test_conflict_is_retried_transparently(self):
        flaky, calls = self._flaky_find(failures=2)
        with mock.patch.object(Ledger, "_find_wallet", flaky):
            tx = self.ledger.deposit("alice", "10.00")

        self.assertEqual(tx.amount, Decimal("10.00"))
        self.assertEqual(calls["n"], 3)
        self.assertEqual(self.balance("alice"), Decimal("10.00"))
        self.assertEqual(self.transaction_count(), 1)

    def test_exhausted_retries_surface_store_unavailable(self):
        flaky, calls = self._flaky_find(failures=10)
        with mock.patch.object(Ledger, "_find_wallet", flaky):
            with self.assertRaises(StoreUnavailable):
                self.ledger.deposit("alice", "10.00")

        self.assertEqual(calls["n"], 3)
        self.assertEqual(self.transaction_count(), 0)

    def test_non_conflict_store_errors_are_not_retried(self):
        flaky, calls = self._flaky_find(failures=10, error=ProgrammingError("SELECT", {}, Exception("no such table")))
        with mock.patch.object(Ledger, "_find_wallet", flaky):
            with self.assertRaises(StoreUnavailable):
                self.ledger.get_or_create_wallet("alice")
        self.assertEqual(calls["n"], 1)

    def test_wallet_created_outside_snapshot_retries_unit(self):
        existing = self.ledger.get_or_create_wallet("alice")
        real = Ledger._find_wallet
        calls = {"n": 0}

        def find(session, user_id):
            # The first attempt cannot see the committed wallet, before or after its insert fails
            calls["n"] += 1
            return None if calls["n"] <= 2 else real(session, user_id)

        with mock.patch.object(Ledger, "_find_wallet", staticmethod(find)):
            wallet = self.ledger.get_or_create_wallet("alice")

        self.assertEqual(wallet.id, existing.id)
        self.assertEqual(calls["n"], 3)
        self.assertEqual(self.wallet_count("alice"), 1)

    def test_business_errors_are_not_retried(self):
        real = Ledger._find_wallet
        with mock.patch.object(Ledger, "_find_wallet", side_effect=real) as find:
            with self.assertRaises(WalletNotFound):
                self.ledger.transfer("ghost", "bob", "1")
        self.assertEqual(find.call_count, 1)


class TestConcurrentTransfers(LedgerTestCase):

    def _run_concurrently(self, calls):
        barrier = threading.Barrier(len(calls))

        def run(call):
            barrier.wait()
            try:
                return call()
            except InsufficientBalance as e:
                return e

        with ThreadPoolExecutor(max_workers=len(calls)) as pool:
            return list(pool.map(run, calls))

    def test_two_transfers_cannot_double_spend(self):
        self.ledger.deposit("alice", "100")

        results = self._run_concurrently([
            lambda: self.ledger.transfer("alice", "bob", "60"),
            lambda: self.ledger.transfer("alice", "carol", "60"),
        ])

        successes = [r for r in results if isinstance(r, Transaction)]
        failures = [r for r in results if isinstance(r, InsufficientBalance)]
        self.assertEqual(len(successes), 1)
        self.assertEqual(len(failures), 1)
        self.assertEqual(self.balance("alice"), Decimal("40.00"))
        self.assertEqual(self.balance("bob") + self.balance("carol"), Decimal("60.00"))

    def test_n_transfers_from_n_minus_one_funds(self):
        n, amount = 5, Decimal("10.00")
        self.ledger.deposit("alice", amount * (n - 1))

        results = self._run_concurrently([
            (lambda i=i: self.ledger.transfer("alice", f"payee-{i}", amount)) for i in range(n)
        ])

        successes = [r for r in results if isinstance(r, Transaction)]
        self.assertEqual(len(successes), n - 1)
        self.assertEqual(self.balance("alice"), Decimal("0.00"))
        received = sum(self.balance(f"payee-{i}") for i in range(n))
        self.assertEqual(received, amount * (n - 1))

    def test_opposing_transfers_complete_and_conserve(self):
        self.ledger.deposit("alice", "50")
        self.ledger.deposit("bob", "50")

        calls = []
        for _ in range(5):
            calls.append(lambda: self.ledger.transfer("alice", "bob", "1"))
            calls.append(lambda: self.ledger.transfer("bob", "alice", "2"))
        results = self._run_concurrently(calls)

        self.assertTrue(all(isinstance(r, Transaction) for r in results))
        self.assertEqual(self.balance("alice"), Decimal("55.00"))
        self.assertEqual(self.balance("bob"), Decimal("45.00"))

    def test_concurrent_deposits_lose_no_updates(self):
        results = self._run_concurrently([
            (lambda: self.ledger.deposit("alice", "1.25")) for _ in range(10)
        ])
        self.assertEqual(len(results), 10)
        self.assertEqual(self.balance("alice"), Decimal("12.50"))
        self.assertEqual(len(self.ledger.get_history("alice")), 10)


class TestNormalizeAmount(unittest.TestCase):

    def test_accepts_decimal_like_values(self):
        self.assertEqual(normalize_amount(5), Decimal("5.00"))
        self.assertEqual(normalize_amount("12.3"), Decimal("12.30"))
        self.assertEqual(normalize_amount(0.1), Decimal("0.10"))

    def test_rejects_malformed_values(self):
        for amount in (True, None, "abc", "Infinity", "0.001", "10000000000.00"):
            with self.subTest(amount=amount):
                with self.assertRaises(InvalidAmount):
                    normalize_amount(amount)


if __name__ == "__main__":
    unittest.main()
