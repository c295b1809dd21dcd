"""
Utility modules for the TISS claims engine.

Provides:
- Date helpers and naive-UTC clock
- Brazilian business calendar
- Money parsing in minor units
- Structured logging configuration
"""

from tiss_claims.utils.dates import (
    utc_now,
    today,
    add_days,
    add_months,
    first_of_month,
    last_of_month,
    parse_loose_date,
)
from tiss_claims.utils.calendar import BrazilianCalendar
from tiss_claims.utils.money import parse_amount, format_amount
from tiss_claims.utils.logging import configure_logging, get_logger, StageLog

__all__ = [
    # Dates
    "utc_now",
    "today",
    "add_days",
    "add_months",
    "first_of_month",
    "last_of_month",
    "parse_loose_date",
    # Calendar
    "BrazilianCalendar",
    # Money
    "parse_amount",
    "format_amount",
    # Logging
    "configure_logging",
    "get_logger",
    "StageLog",
]
