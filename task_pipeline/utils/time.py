from datetime import datetime, timezone

def utcnow() -> datetime:
    """
    Naive UTC timestamp.

    All DateTime columns hold naive UTC so that comparisons behave the same on
    Postgres and SQLite (which drops tzinfo on the way back).
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)

def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
