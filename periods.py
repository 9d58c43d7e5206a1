import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

MIN_YEAR = 1900
# the end of 9999-12-31 in a zone west of UTC falls in year 10000
MAX_YEAR = 9998


class InvalidQueryParam(ValueError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


@dataclass(frozen=True)
class Period:
    """Calendar window in local wall time.

    `start` and `end` are what clients see. Stored timestamps are naive UTC,
    so queries use `utc_start` and `utc_end`.
    """

    year: int
    month: Optional[int]
    start: datetime
    end: datetime

    @property
    def utc_start(self) -> datetime:
        return local_to_utc(self.start)

    @property
    def utc_end(self) -> datetime:
        return local_to_utc(self.end)


def local_zone() -> ZoneInfo:
    return ZoneInfo(get_settings().timezone)


def local_today() -> date:
    return datetime.now(local_zone()).date()


def local_to_utc(value: datetime) -> datetime:
    aware = value.replace(tzinfo=local_zone())
    return aware.astimezone(timezone.utc).replace(tzinfo=None)


def utc_to_local(value: datetime) -> datetime:
    aware = value.replace(tzinfo=timezone.utc)
    return aware.astimezone(local_zone()).replace(tzinfo=None)


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def month_window(year: int, month: int) -> Period:
    last_day = date(year, month, days_in_month(year, month))
    return Period(
        year=year,
        month=month,
        start=datetime(year, month, 1),
        end=datetime.combine(last_day, time.max),
    )


def year_window(year: int) -> Period:
    return Period(
        year=year,
        month=None,
        start=datetime(year, 1, 1),
        end=datetime.combine(date(year, 12, 31), time.max),
    )


def parse_int_param(
    value: Optional[str],
    field: str,
    *,
    minimum: int = 1,
    maximum: Optional[int] = None,
) -> Optional[int]:
    """Parse an optional integer query value; blank means absent."""
    if value is None or not value.strip():
        return None
    try:
        number = int(value.strip())
    except ValueError:
        raise InvalidQueryParam(field, "Deve ser um número inteiro") from None
    if number < minimum:
        raise InvalidQueryParam(field, f"Deve ser no mínimo {minimum}")
    if maximum is not None and number > maximum:
        raise InvalidQueryParam(field, f"Deve ser no máximo {maximum}")
    return number


def resolve_month_period(
    month: Optional[str],
    year: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    parsed_month = parse_int_param(month, "month", minimum=1, maximum=12)
    parsed_year = parse_int_param(year, "year", minimum=MIN_YEAR, maximum=MAX_YEAR)
    return month_window(parsed_year or today.year, parsed_month or today.month)


def resolve_year_period(year: Optional[str], *, today: Optional[date] = None) -> Period:
    today = today or local_today()
    parsed_year = parse_int_param(year, "year", minimum=MIN_YEAR, maximum=MAX_YEAR)
    return year_window(parsed_year or today.year)
