# wallet_service/utils/dates.py
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    """
    SQLite отдает даты без таймзоны, PostgreSQL - с таймзоной.
    Все даты в базе пишутся в UTC, поэтому наивные значения считаем UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
