"""Timezone helpers – provide a single UTC-aware *now()* function.

Import :pyfunc:`utc_now` / :pyfunc:`utc_now_naive` everywhere instead of
calling the stdlib helpers directly so expiry comparisons never mix naive and
aware datetimes.
"""

from datetime import datetime
from datetime import timezone


def utc_now() -> datetime:  # noqa: D401 – simple utility
    """Return *aware* current time in UTC."""

    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:  # noqa: D401 – simple utility
    """Return *naive* current time in UTC for database compatibility.

    SQLAlchemy DateTime columns without timezone info store naive datetimes.
    This function provides UTC time in the format expected by the database.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalise *value* to a naive UTC datetime (naive input is assumed UTC)."""

    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


__all__ = ["utc_now", "utc_now_naive", "as_naive_utc"]
