import os
import logging
from datetime import datetime, date, timezone
from typing import Any, Optional

from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/Argentina/Buenos_Aires"


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        logger.warning(f"Invalid integer for {name}, using {default}")
        return default


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def get_app_timezone():
    tz_name = os.getenv("APP_TIMEZONE") or os.getenv("TZ") or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(tz_name)
    except Exception:
        logger.warning(f"Unknown timezone {tz_name}, falling back to UTC")
        return timezone.utc


def now_local_naive() -> datetime:
    """Studio wall-clock time. Course dates and times are stored in this zone."""
    return datetime.now(timezone.utc).astimezone(get_app_timezone()).replace(tzinfo=None)


def parse_int(value: Any) -> Optional[int]:
    try:
        if value is None:
            return None
        return int(value)
    except Exception:
        return None


def iso(value: Optional[Any]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    try:
        return value.isoformat(timespec="minutes")
    except Exception:
        return str(value)
