from datetime import datetime, timezone
import hashlib


def utcnow():
    """Current time as timezone-naive UTC, matching how columns are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_naive_utc(dt):
    """Convert datetime to timezone-naive UTC"""
    if dt is None:
        return None
    if hasattr(dt, 'tzinfo') and dt.tzinfo is not None:
        # Has timezone - convert to UTC and strip timezone
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def hash_ip(ip: str | None) -> str | None:
    if not ip:
        return None
    return hashlib.sha256(ip.encode()).hexdigest()


def isoformat_z(dt):
    """ISO string with a trailing Z for naive UTC datetimes."""
    if dt is None:
        return None
    return ensure_naive_utc(dt).isoformat() + "Z"
