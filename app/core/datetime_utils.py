"""
Timezone helpers.

PostgreSQL returns timezone-aware datetimes for DateTime(timezone=True)
columns; SQLite returns naive ones holding the same UTC wall time. Normalise
with as_utc() before comparing or doing arithmetic on values read back from
the database.
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive input is taken to already be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
