from datetime import datetime, timedelta, timezone
import threading
from typing import Optional, Union

_ONE_MS = timedelta(milliseconds=1)
_clock_lock = threading.Lock()
_last_issued: Optional[datetime] = None


def truncate_ms(dt: datetime) -> datetime:
    """Drop sub-millisecond precision (MongoDB stores milliseconds)."""
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000)


def utc_now() -> datetime:
    """Current naive UTC datetime at millisecond precision."""
    return truncate_ms(datetime.now(timezone.utc).replace(tzinfo=None))


def next_message_timestamp() -> datetime:
    """Strictly increasing message timestamp for this process.

    Two messages created in the same millisecond would otherwise share a
    timestamp and could straddle a page cursor.
    """
    global _last_issued
    with _clock_lock:
        now = utc_now()
        if _last_issued is not None and now <= _last_issued:
            now = _last_issued + _ONE_MS
        _last_issued = now
        return now


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_cursor(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 pagination cursor into naive UTC.

    Raises ValueError for anything that is not ISO-8601.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return to_naive_utc(datetime.fromisoformat(text))


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    """Render a stored naive-UTC datetime as ISO-8601 with millisecond precision."""
    if dt is None:
        return None
    return to_naive_utc(dt).isoformat(timespec='milliseconds') + 'Z'
