import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./nutrivault.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Frontend base URL for redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Google Calendar OAuth Configuration
# Tokens are obtained by the frontend flow; this service only reads and refreshes them
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")

# Google Calendar API behaviour
GOOGLE_CALENDAR_TIMEZONE = os.getenv("GOOGLE_CALENDAR_TIMEZONE", "Europe/Paris")
GOOGLE_API_TIMEOUT = float(os.getenv("GOOGLE_API_TIMEOUT", "10"))

# Calendar sync engine
SYNC_COOLDOWN_SECONDS = float(os.getenv("SYNC_COOLDOWN_SECONDS", "2"))
SYNC_LOOKBACK_DAYS = int(os.getenv("SYNC_LOOKBACK_DAYS", "7"))
AGENDA_SYNC_LOOKBACK_DAYS = int(os.getenv("AGENDA_SYNC_LOOKBACK_DAYS", "30"))
MAX_SYNC_ERROR_COUNT = int(os.getenv("MAX_SYNC_ERROR_COUNT", "3"))
# "cancel" marks the visit CANCELLED when its event disappears, "flag" only records it
DELETED_EVENT_POLICY = os.getenv("DELETED_EVENT_POLICY", "cancel").lower()

# Cooldown store: "memory" for a single instance, "redis" when horizontally scaled
SYNC_COOLDOWN_BACKEND = os.getenv("SYNC_COOLDOWN_BACKEND", "memory").lower()
SYNC_COOLDOWN_MAX_ENTRIES = int(os.getenv("SYNC_COOLDOWN_MAX_ENTRIES", "10000"))

# Periodic sync (arq cron) in addition to opportunistic triggers
PERIODIC_SYNC_ENABLED = os.getenv("PERIODIC_SYNC_ENABLED", "true").lower() == "true"
