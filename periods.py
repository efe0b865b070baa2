import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


@dataclass(frozen=True)
class MonthRanges:
    month: str
    label: str
    start: date
    end_exclusive: date
    previous_start: date
    previous_end_exclusive: date


def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def days_in_month(d: date) -> int:
    return calendar.monthrange(d.year, d.month)[1]


def clamp_day(year: int, month: int, day: int) -> date:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(max(day, 1), last))


def normalize_month_key(raw: Optional[str], *, today: date) -> str:
    value = (raw or "").strip()
    if value and MONTH_PATTERN.match(value):
        return value
    return month_key(today)


def month_label(key: str) -> str:
    year, month = (int(part) for part in key.split("-"))
    return f"{MONTH_NAMES[month - 1]} {year}"


def month_ranges(raw: Optional[str], *, today: date) -> MonthRanges:
    key = normalize_month_key(raw, today=today)
    year, month = (int(part) for part in key.split("-"))
    start = date(year, month, 1)
    return MonthRanges(
        month=key,
        label=month_label(key),
        start=start,
        end_exclusive=add_months(start, 1),
        previous_start=add_months(start, -1),
        previous_end_exclusive=start,
    )


def local_today(tz_name: str) -> date:
    return datetime.now(ZoneInfo(tz_name)).date()
