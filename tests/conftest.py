import os
import tempfile

# Settings are read once at import time; keep the test run away from the local database file
_TEST_DIR = tempfile.mkdtemp(prefix="bochica-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'app.db')}")
os.environ.setdefault("REPAYMENT_CHECKER_API_KEY", "")
os.environ.setdefault("REPAYMENT_POLL_INTERVAL_SECONDS", "0")
