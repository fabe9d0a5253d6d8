"""
Installment Schedule Module

Pure date arithmetic for payment plans: cadence definitions, calendar-aware
period advancement and installment schedule generation. Nothing here reads
the wall clock or touches storage.
"""

from datetime import date, timedelta
from dataclasses import dataclass
from typing import List, Union
from enum import Enum
import calendar

from .errors import InvalidCadenceError


class Cadence(Enum):
    """Recurrence rules for installment due dates"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def is_calendar_based(self) -> bool:
        """Month-based cadences need calendar rollover instead of fixed day counts"""
        return self in (Cadence.MONTHLY, Cadence.QUARTERLY, Cadence.YEARLY)


# Fixed-length cadences in days
_DAY_STEPS = {
    Cadence.DAILY: 1,
    Cadence.WEEKLY: 7,
    Cadence.BIWEEKLY: 14,
}

# Calendar cadences in months
_MONTH_STEPS = {
    Cadence.MONTHLY: 1,
    Cadence.QUARTERLY: 3,
    Cadence.YEARLY: 12,
}

# Spellings seen in stored plans and payment links
_CADENCE_ALIASES = {
    "bi-weekly": Cadence.BIWEEKLY,
    "bi_weekly": Cadence.BIWEEKLY,
    "fortnightly": Cadence.BIWEEKLY,
    "annually": Cadence.YEARLY,
    "annual": Cadence.YEARLY,
}


@dataclass(frozen=True)
class ScheduledInstallment:
    """One generated due installment, before it is persisted"""
    sequence_number: int
    total_in_series: int
    due_date: date
    amount: int


def parse_cadence(value: Union[str, Cadence]) -> Cadence:
    """
    Coerce a cadence name into a Cadence

    Raises:
        InvalidCadenceError: for anything that is not a known cadence
    """
    if isinstance(value, Cadence):
        return value
    if not isinstance(value, str):
        raise InvalidCadenceError(f"Invalid cadence: {value!r}")

    normalized = value.strip().lower()
    if normalized in _CADENCE_ALIASES:
        return _CADENCE_ALIASES[normalized]
    try:
        return Cadence(normalized)
    except ValueError:
        raise InvalidCadenceError(f"Invalid cadence: {value!r}")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance(start_date: date, cadence: Union[str, Cadence], periods: int) -> date:
    """
    Move a date forward by a number of cadence periods

    Calendar cadences are always computed from the anchor date, so
    Jan 31 advanced by two months lands on Mar 31 rather than Mar 28.

    Args:
        start_date: Anchor date
        cadence: Recurrence rule
        periods: Number of periods (0 returns the anchor)

    Returns:
        The advanced date
    """
    cadence = parse_cadence(cadence)
    if periods < 0:
        raise ValueError("periods must be non-negative")

    if cadence in _DAY_STEPS:
        return start_date + timedelta(days=_DAY_STEPS[cadence] * periods)
    return add_months(start_date, _MONTH_STEPS[cadence] * periods)


def shift_date(value: date, days: int) -> date:
    """Shift a due date by a signed number of days"""
    return value + timedelta(days=days)


def split_total(total_amount: int, count: int) -> List[int]:
    """
    Split a total (minor units) into integer installments

    Every installment gets the floored share; the final one absorbs the
    remainder so the parts always sum to the total.
    """
    if count < 1:
        raise ValueError("count must be at least 1")
    if total_amount <= 0:
        raise ValueError("total_amount must be positive")

    share = total_amount // count
    parts = [share] * count
    parts[-1] += total_amount - share * count
    return parts


def generate_schedule(
    start_date: date,
    cadence: Union[str, Cadence],
    count: int,
    installment_amount: Union[int, List[int]]
) -> List[ScheduledInstallment]:
    """
    Generate the ordered installment sequence for a plan

    Args:
        start_date: Due date of the first installment
        cadence: Recurrence rule
        count: Number of installments
        installment_amount: Per-installment amount in minor units, or an
            explicit list of amounts (one per installment)

    Returns:
        List of ScheduledInstallment ordered by sequence number
    """
    cadence = parse_cadence(cadence)
    if count < 1:
        raise ValueError("count must be at least 1")

    if isinstance(installment_amount, list):
        if len(installment_amount) != count:
            raise ValueError("amount list length must equal count")
        amounts = installment_amount
    else:
        amounts = [installment_amount] * count

    if any(amount <= 0 for amount in amounts):
        raise ValueError("installment amounts must be positive")

    return [
        ScheduledInstallment(
            sequence_number=index + 1,
            total_in_series=count,
            due_date=advance(start_date, cadence, index),
            amount=amounts[index]
        )
        for index in range(count)
    ]
