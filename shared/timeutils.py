from datetime import datetime, timezone
from typing import Optional

from dateutil import tz

from shared.config import TZ

LOCAL_TZ = tz.gettz(TZ) or tz.UTC


def utcnow() -> datetime:
    """Naive UTC, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_local(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt.replace(tzinfo=tz.UTC).astimezone(LOCAL_TZ)


def fmt_local(dt: Optional[datetime]) -> str:
    """Human-readable local time for audit notes."""
    local = to_local(dt)
    if local is None:
        return "?"
    return local.strftime("%d/%m/%Y %H:%M")
