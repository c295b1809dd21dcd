"""
Date and time helpers.

All persisted timestamps are naive UTC so they compare consistently on
both PostgreSQL and SQLite.
"""

from datetime import date, datetime, timedelta, timezone

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta


def utc_now() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today() -> date:
    """Current UTC date."""
    return utc_now().date()


def add_days(d: date, days: int) -> date:
    """Add days to a date (can be negative)."""
    return d + timedelta(days=days)


def add_months(d: date, months: int) -> date:
    """
    Add months to a date.

    Handles end-of-month edge cases (e.g., Jan 31 + 1 month = Feb 28).
    """
    return d + relativedelta(months=months)


def first_of_month(d: date) -> date:
    """Get the first day of the month."""
    return d.replace(day=1)


def last_of_month(d: date) -> date:
    """Get the last day of the month."""
    return first_of_month(d) + relativedelta(months=1) - timedelta(days=1)


def parse_loose_date(value: str) -> date | None:
    """
    Parse a date written in any common clinic format.

    Accepts ISO (2026-01-13), Brazilian day-first (13/01/2026, 13-01-2026)
    and compact (20260113) forms. Returns None when the text is not a date.
    """
    text = value.strip()
    if not text:
        return None
    if text.isdigit() and len(text) == 8:
        try:
            return datetime.strptime(text, "%Y%m%d").date()
        except ValueError:
            return None
    # ISO strings start with the year; everything else is read day-first
    dayfirst = not (len(text) >= 4 and text[:4].isdigit())
    try:
        return date_parser.parse(text, dayfirst=dayfirst).date()
    except (ValueError, OverflowError):
        return None
