import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

DEFAULT_SERVER_URL = os.environ.get("DIFFLOG_SERVER_URL", "http://localhost:8000")
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("DIFFLOG_REQUEST_TIMEOUT", "30"))

# Debounce between the last tracked change and the background upload
AUTO_SYNC_DELAY_SECONDS = 2.0

# Visibility-triggered re-sync only after this long without a sync
STALE_AFTER = timedelta(hours=1)

# Local retention, mirrors the server cap
MAX_LOCAL_DIFFS = 50

# Client-side key derivation
KDF_ITERATIONS = 100_000
KEY_BYTES = 32
SALT_BYTES = 16
IV_BYTES = 12
