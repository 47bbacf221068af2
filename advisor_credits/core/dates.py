"""Grant-window arithmetic."""

from datetime import datetime

from dateutil.relativedelta import relativedelta


def add_one_month(start: datetime) -> datetime:
    """Same day next month, clamped to the month's last day (Jan 31 -> Feb 28/29)."""
    return start + relativedelta(months=1)


def grant_window(start: datetime) -> tuple[datetime, datetime]:
    return start, add_one_month(start)


def truncate_ms(value: datetime) -> datetime:
    """Drop sub-millisecond precision so values round-trip through BSON unchanged."""
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utcnow() -> datetime:
    return truncate_ms(datetime.utcnow())
