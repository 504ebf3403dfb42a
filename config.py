import os

BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tracechain.db")

# device-local store for the offline outbox
OUTBOX_DATABASE_URL = os.getenv("OUTBOX_DATABASE_URL", "sqlite:///./outbox.db")
OUTBOX_BACKOFF_BASE_SECONDS = float(os.getenv("OUTBOX_BACKOFF_BASE_SECONDS", "5"))
OUTBOX_BACKOFF_MAX_SECONDS = float(os.getenv("OUTBOX_BACKOFF_MAX_SECONDS", "900"))
OUTBOX_MAX_AGE_HOURS = float(os.getenv("OUTBOX_MAX_AGE_HOURS", "72"))

CHAIN_APPEND_RETRIES = int(os.getenv("CHAIN_APPEND_RETRIES", "3"))
ENFORCE_ROLES = os.getenv("ENFORCE_ROLES", "1").lower() in ("1", "true", "yes")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
