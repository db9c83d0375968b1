"""Utility functions for the debt plan engine.

This module provides helpers for parsing user input into Python data types
and for handling dates, including adding calendar months, counting the days
between two dates and rounding amounts to cents. It uses Python's
``datetime`` module to calculate month offsets.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
import calendar

getcontext().prec = 28  # increase decimal precision to avoid rounding errors

CENT = Decimal("0.01")


def round2(value: Decimal) -> Decimal:
    """Round ``value`` to two decimals, half away from zero."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def add_months(dt: date, months: int) -> date:
    """Return a new date a number of months after ``dt``.

    The day of the month is clamped to the last valid day if needed (e.g.,
    adding one month to Jan 31 yields Feb 28 or 29).
    """
    year = dt.year + (dt.month - 1 + months) // 12
    month = (dt.month - 1 + months) % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def days_between(start: date, end: date) -> int:
    """Return the actual calendar days from ``start`` to ``end``.

    A negative gap (``end`` before ``start``) counts as zero days so that an
    interest start date later than the first due date never produces
    negative interest.
    """
    return max((end - start).days, 0)


def parse_iso_date(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` string into a ``date``.

    Raises
    ------
    ValueError
        If the string is not a valid ISO date.
    """
    try:
        return date.fromisoformat(value.strip())
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid date: {value}") from exc


def is_finite(value) -> bool:
    """Return True unless ``value`` is NaN, sNaN or an infinity."""
    return Decimal(value).is_finite()


def decimal_from_str(value: str) -> Decimal:
    """Convert a numeric string into a ``Decimal``.

    The function strips any thousands commas and handles both integer and
    float-like strings. It raises ``ValueError`` if conversion fails or the
    value is not finite.
    """
    try:
        cleaned = str(value).replace(",", "").strip()
        number = Decimal(cleaned)
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid numeric value: {value}") from exc
    if not number.is_finite():
        raise ValueError(f"Invalid numeric value: {value}")
    return number
