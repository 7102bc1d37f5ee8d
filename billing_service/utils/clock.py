from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(seconds) -> datetime | None:
    """Provider timestamps are Unix seconds; 0/None mean unset."""
    if not seconds:
        return None
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc).replace(tzinfo=None)
