import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./difflog.db")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").upper()

CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

# Storage limits (match client-side caps)
MAX_DIFFS_PER_PROFILE = int(os.environ.get("MAX_DIFFS_PER_PROFILE", "50"))

# Rate limiting
AUTH_MAX_ATTEMPTS = int(os.environ.get("AUTH_MAX_ATTEMPTS", "5"))
AUTH_LOCKOUT_MINUTES = int(os.environ.get("AUTH_LOCKOUT_MINUTES", "15"))
AUTH_ATTEMPT_WINDOW_MINUTES = int(os.environ.get("AUTH_ATTEMPT_WINDOW_MINUTES", "5"))

# Server-side key derivation for stored password records
PBKDF2_ITERATIONS = max(100_000, int(os.environ.get("PBKDF2_ITERATIONS", "100000")))
PBKDF2_KEY_BYTES = 32
SERVER_SALT_BYTES = 16
