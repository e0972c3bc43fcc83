import os
from zoneinfo import ZoneInfo


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on", "t")


def _env_int(key: str, default: int) -> int:
    try:
        return int(_env_or(key, str(default)))
    except ValueError:
        return default


ENV = _env_or("ENV", "dev").lower()
DB_URL = _env_or("CLINIC_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/clinic.db"))
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None

CLINIC_TIMEZONE = _env_or("CLINIC_TIMEZONE", "UTC")
ALLOCATION_RETRIES = max(1, _env_int("CLINIC_ALLOCATION_RETRIES", 3))
ENFORCE_CUTOVER = _env_bool("CLINIC_ENFORCE_CUTOVER", False)
AVAILABLE_DAYS_HORIZON = max(1, _env_int("CLINIC_AVAILABLE_DAYS_HORIZON", 30))
DEMO_SEED = _env_bool("CLINIC_DEMO_SEED", False)

NOTIFY_BACKEND = _env_or("NOTIFY_BACKEND", "log").lower()
NOTIFY_BASE_URL = _env_or("NOTIFY_BASE_URL", "")
NOTIFY_REDIS_URL = _env_or("NOTIFY_REDIS_URL", "redis://localhost:6379/0")
NOTIFY_TIMEOUT_SECS = float(_env_int("NOTIFY_TIMEOUT_SECS", 5))


def clinic_tz() -> ZoneInfo:
    try:
        return ZoneInfo(CLINIC_TIMEZONE)
    except Exception:
        return ZoneInfo("UTC")
