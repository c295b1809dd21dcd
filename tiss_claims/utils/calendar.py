"""
Brazilian business calendar utilities.

Used to compute glosa appeal deadlines, which operators count in
business days.
"""

from datetime import date, timedelta

import holidays


class BrazilianCalendar:
    """
    Brazilian business calendar with national and state holidays.

    Caches holiday lookups per year.

    Usage:
        calendar = BrazilianCalendar(subdivision="SP")
        deadline = calendar.add_business_days(date(2026, 1, 13), 30)
    """

    def __init__(self, subdivision: str | None = None):
        """
        Initialize the calendar.

        Args:
            subdivision: State code (e.g. "SP") for state holidays, or None
                for national holidays only
        """
        self.subdivision = subdivision.upper() if subdivision else None
        self._holiday_cache: dict[int, set[date]] = {}

    def _get_holidays_for_year(self, year: int) -> set[date]:
        if year not in self._holiday_cache:
            br_holidays = holidays.country_holidays(
                "BR",
                subdiv=self.subdivision,
                years=year,
            )
            self._holiday_cache[year] = set(br_holidays.keys())
        return self._holiday_cache[year]

    def is_holiday(self, d: date) -> bool:
        """Check if a date is a public holiday."""
        return d in self._get_holidays_for_year(d.year)

    def is_weekend(self, d: date) -> bool:
        """Check if a date is Saturday or Sunday."""
        return d.weekday() >= 5

    def is_business_day(self, d: date) -> bool:
        """A business day is neither a weekend nor a public holiday."""
        return not self.is_weekend(d) and not self.is_holiday(d)

    def next_business_day(self, d: date) -> date:
        """Get the next business day on or after a date."""
        while not self.is_business_day(d):
            d = d + timedelta(days=1)
        return d

    def add_business_days(self, d: date, days: int) -> date:
        """
        Add a number of business days to a date.

        The start date itself is not counted.

        Args:
            d: Starting date
            days: Business days to add (>= 0)

        Returns:
            The business day reached after counting ``days`` business days
        """
        current = d
        remaining = days
        while remaining > 0:
            current = current + timedelta(days=1)
            if self.is_business_day(current):
                remaining -= 1
        return current
