import os
import logging

logger = logging.getLogger(__name__)

# --- Server ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Comma-separated; "*" allows any origin
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# --- Database ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./datamocker.db")

# Fix for common SQLAlchemy issues with postgres:// vs postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# --- Counter store backing the daily quota: "sql" or "memory" ---
COUNTER_STORE = os.getenv("COUNTER_STORE", "sql").lower()

# --- Server-side AI provider defaults ---
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_API_DEFAULT_MODEL = os.getenv("OPENAI_API_DEFAULT_MODEL", "gpt-4o-mini")
OPENAI_API_BASE_URL = os.getenv("OPENAI_API_BASE_URL", "")

PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "60"))

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4000

# --- Daily generation limits ---
DEFAULT_DAILY_LIMIT_ANONYMOUS = 5
DEFAULT_DAILY_LIMIT_AUTHENTICATED = 20


def _read_limit(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default
    if value < 0:
        logger.warning(f"Ignoring negative {name}={value}, using {default}")
        return default
    return value


def get_daily_limit(authenticated: bool = False) -> int:
    """Daily generation limit, read from the environment on every call."""
    if authenticated:
        return _read_limit("DAILY_LIMIT_AUTHENTICATED", DEFAULT_DAILY_LIMIT_AUTHENTICATED)
    return _read_limit("DAILY_LIMIT_ANONYMOUS", DEFAULT_DAILY_LIMIT_ANONYMOUS)


def get_provider_defaults() -> dict:
    """Server-side provider settings used when a request brings none of its own."""
    return {
        "api_key": os.getenv("OPENAI_API_KEY", OPENAI_API_KEY),
        "model": os.getenv("OPENAI_API_DEFAULT_MODEL", OPENAI_API_DEFAULT_MODEL),
        "base_url": os.getenv("OPENAI_API_BASE_URL", OPENAI_API_BASE_URL) or None,
    }
