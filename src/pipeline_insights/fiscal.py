"""
Fiscal calendar: resolves relative period tokens to half-open UTC date ranges.

Fiscal year N runs February 1 of N through January 31 of N+1.
Quarters: Q1 Feb-Apr, Q2 May-Jul, Q3 Aug-Oct, Q4 Nov-Jan.
All arithmetic is on calendar dates; datetimes are reduced to their UTC date
first, so results never depend on the process time zone.
"""

import calendar
import re
from datetime import date, datetime
from typing import Optional, Union

from pipeline_insights.errors import InvalidPeriodError
from pipeline_insights.models.period import DateRange, as_utc_date

FISCAL_YEAR_START_MONTH = 2

_LAST_N_MONTHS = re.compile(r"^last-(\d+)-months?$")
_FISCAL_YEAR = re.compile(r"^fy-?(\d{4})$")

Reference = Union[date, datetime]


def _reference_date(reference: Reference) -> date:
    day = as_utc_date(reference)
    if not isinstance(day, date):
        raise InvalidPeriodError(str(reference), "reference must be a date or datetime")
    return day


def add_months(day: date, months: int) -> date:
    """Shift by whole months, clamping the day to the target month's length."""
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    last_day = calendar.monthrange(year, month + 1)[1]
    return date(year, month + 1, min(day.day, last_day))


def fiscal_year(day: date) -> int:
    """Fiscal year containing day, named by the calendar year it starts in."""
    return day.year if day.month >= FISCAL_YEAR_START_MONTH else day.year - 1


def fiscal_year_range(year: int) -> DateRange:
    start = date(year, FISCAL_YEAR_START_MONTH, 1)
    return DateRange(start=start, end=add_months(start, 12))


def fiscal_quarter(day: date) -> int:
    return (day.month - FISCAL_YEAR_START_MONTH) % 12 // 3 + 1


def fiscal_quarter_range(day: date) -> DateRange:
    """Quarter containing day."""
    fy = fiscal_year(day)
    start = add_months(date(fy, FISCAL_YEAR_START_MONTH, 1), (fiscal_quarter(day) - 1) * 3)
    return DateRange(start=start, end=add_months(start, 3))


def fiscal_year_label(day: date) -> str:
    return f"FY{fiscal_year(day)}"


def fiscal_quarter_label(day: date) -> str:
    return f"FY{fiscal_year(day)} Q{fiscal_quarter(day)}"


def resolve_period(
    token: str,
    reference: Reference,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> DateRange:
    """
    Resolve a relative period token against a reference instant.

    Tokens: last-N-months, month-to-date, fq-to-date, fy-to-date, last-fq,
    last-fy, fy-YYYY, custom (requires explicit start and end).
    To-date ranges end at the reference date (exclusive); last-fq and last-fy
    are fully bounded and never touch the current period.
    """
    key = token.strip().lower()
    ref = _reference_date(reference)

    if key == "custom":
        if start is None or end is None:
            raise InvalidPeriodError(token, "custom period needs start and end")
        try:
            return DateRange(start=as_utc_date(start), end=as_utc_date(end))
        except ValueError as e:
            raise InvalidPeriodError(token, str(e)) from e

    match = _LAST_N_MONTHS.match(key)
    if match:
        months = int(match.group(1))
        if months < 1:
            raise InvalidPeriodError(token, "month count must be positive")
        return DateRange(start=add_months(ref, -months), end=ref)

    match = _FISCAL_YEAR.match(key)
    if match:
        return fiscal_year_range(int(match.group(1)))

    if key == "month-to-date":
        return DateRange(start=ref.replace(day=1), end=ref)
    if key == "fq-to-date":
        return DateRange(start=fiscal_quarter_range(ref).start, end=ref)
    if key == "fy-to-date":
        return DateRange(start=fiscal_year_range(fiscal_year(ref)).start, end=ref)
    if key == "last-fq":
        current = fiscal_quarter_range(ref)
        return DateRange(start=add_months(current.start, -3), end=current.start)
    if key == "last-fy":
        return fiscal_year_range(fiscal_year(ref) - 1)

    raise InvalidPeriodError(token)


class FiscalCalendar:
    """Stateless resolver injected wherever a period token needs resolving."""

    def resolve(
        self,
        period: Union[str, DateRange],
        reference: Reference,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> DateRange:
        if isinstance(period, DateRange):
            return period
        return resolve_period(period, reference, start=start, end=end)

    def fiscal_year_range(self, year: int) -> DateRange:
        return fiscal_year_range(year)
