import os
import sys
import tempfile

# Service modules read their settings at import time
_tmp = tempfile.mkdtemp(prefix="marketplace-tests-")
for _name in ("AUTH", "LEDGER", "CONTRACT", "DISPUTE", "NOTIFICATION", "AUDIT"):
    os.environ[f"{_name}_DATABASE_URL"] = f"sqlite:///{os.path.join(_tmp, _name.lower() + '.db')}"
os.environ["EVENTS_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ISSUER"] = "marketplace-tests"
os.environ["LEDGER_RETRY_BASE_DELAY"] = "0"

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
