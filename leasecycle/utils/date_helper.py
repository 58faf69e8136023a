from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union

import pytz
from dateutil.relativedelta import relativedelta

from leasecycle.core.config import settings

TzLike = Union[str, pytz.BaseTzInfo, None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_timezone(tz: TzLike) -> pytz.BaseTzInfo:
    if isinstance(tz, pytz.BaseTzInfo):
        return tz
    return pytz.timezone(tz or settings.DEFAULT_TIMEZONE)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC (that is how the store hands them back)."""
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_local(value: datetime, tz: TzLike) -> datetime:
    return ensure_utc(value).astimezone(get_timezone(tz))


def _localize(naive: datetime, tz: TzLike) -> datetime:
    return get_timezone(tz).localize(naive).astimezone(timezone.utc)


def end_of_day(value: datetime, tz: TzLike) -> datetime:
    local = to_local(value, tz)
    return _localize(datetime.combine(local.date(), time.max), tz)


def add_days(value: datetime, days: int, tz: TzLike) -> datetime:
    """Add calendar days in the partner's local calendar, keeping the wall-clock time."""
    local = to_local(value, tz).replace(tzinfo=None)
    return _localize(local + timedelta(days=days), tz)


def add_months(value: datetime, months: int, tz: TzLike) -> datetime:
    local = to_local(value, tz).replace(tzinfo=None) + relativedelta(months=months)
    return _localize(local, tz)


def add_months_end_of_day(value: datetime, months: int, tz: TzLike) -> datetime:
    local = to_local(value, tz).replace(tzinfo=None) + relativedelta(months=months)
    return _localize(datetime.combine(local.date(), time.max), tz)


def start_of_month(value: datetime, tz: TzLike) -> datetime:
    local = to_local(value, tz)
    return _localize(datetime(local.year, local.month, 1), tz)


def month_key(value: datetime, tz: TzLike, months_back: int = 0) -> str:
    """CPI table key for the month containing ``value`` (``2024M05``)."""
    local = to_local(value, tz) - relativedelta(months=months_back)
    return f"{local.year}M{local.month:02d}"
