"""Shared fixtures for the service test suites"""
import os
import tempfile
import unittest
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy.orm import sessionmaker
from common.database import create_store_engine
from common.schemas import WalletEvent
from common.security import mint_user_jwt

def bearer(user_id: str) -> dict:
    return {"Authorization": f"Bearer {mint_user_jwt(user_id)}"}

def wallet_event(**overrides) -> WalletEvent:
    fields = {
        "type": "TransferCommitted",
        "transaction_id": "tx-1",
        "from_user_id": "alice",
        "to_user_id": "bob",
        "amount": Decimal("30.00"),
        "description": "rent",
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return WalletEvent(**fields)

class StoreTestCase(unittest.TestCase):
    """Gives each test its own SQLite file with metadata's tables created"""
    metadata = None

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.engine = create_store_engine(f"sqlite:///{os.path.join(self._tmp.name, 'store.db')}")
        self.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def tearDown(self):
        self.engine.dispose()
        self._tmp.cleanup()

    def override_db(self, app, get_db):
        def _get_db():
            with self.Session() as db:
                yield db
        app.dependency_overrides[get_db] = _get_db
        self.addCleanup(app.dependency_overrides.clear)
