from datetime import datetime, UTC


def to_utc_naive(dt: datetime) -> datetime:
    """SQLite stores naive datetimes; normalise everything to naive UTC.

    Microseconds are kept: run admission orders by ``inserted_at``.
    """
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC)
    return dt.replace(tzinfo=None)


def utcnow() -> datetime:
    return to_utc_naive(datetime.now(UTC))
