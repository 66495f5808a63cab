"""Overdue detection and fine computation.

Everything here is a pure function of a record's timestamps and a reference
``now``; nothing reads the clock or the database.

Rounding of the late interval is configurable:

* ``ceil`` (default): any part of a day counts as a whole day, so a book
  returned one minute after its due date is one day late.
* ``floor``: whole days only, but a strictly late return is never less than
  one day.

Both rules agree on whole-day intervals (due 2024-01-10, returned
2024-01-13 is three days late under either).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional

from errors import ValidationError

ONE_DAY = timedelta(days=1)
ROUNDING_RULES = ("ceil", "floor")


class LendingStatus(str, Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    RETURNED = "returned"


def status(record, now: datetime) -> LendingStatus:
    """Derive the display status of ``record`` at ``now``."""
    if record.is_returned:
        return LendingStatus.RETURNED
    if now > record.due_date:
        return LendingStatus.OVERDUE
    return LendingStatus.ACTIVE


def days_overdue(record, now: datetime) -> int:
    """Whole days an open record is past due; 0 unless it is overdue."""
    if status(record, now) is not LendingStatus.OVERDUE:
        return 0
    return (now - record.due_date) // ONE_DAY


@dataclass(frozen=True)
class FinePolicy:
    loan_period: timedelta = timedelta(days=14)
    fine_per_day: Decimal = Decimal("50")
    rounding: str = "ceil"

    def __post_init__(self) -> None:
        if self.loan_period <= timedelta(0):
            raise ValidationError("Loan period must be positive.")
        if self.fine_per_day < 0:
            raise ValidationError("Fine per day cannot be negative.")
        if self.rounding not in ROUNDING_RULES:
            raise ValidationError(f"Unknown fine rounding rule: {self.rounding!r}")

    @classmethod
    def from_settings(cls, settings) -> "FinePolicy":
        return cls(
            loan_period=timedelta(days=settings.loan_period_days),
            fine_per_day=Decimal(settings.fine_per_day),
            rounding=settings.fine_rounding,
        )

    def due_date_for(self, lend_date: datetime) -> datetime:
        return lend_date + self.loan_period

    def days_late(self, due_date: datetime, return_date: datetime) -> int:
        if return_date <= due_date:
            return 0
        whole_days, remainder = divmod(return_date - due_date, ONE_DAY)
        if self.rounding == "ceil":
            return whole_days + (1 if remainder else 0)
        return max(whole_days, 1)

    def fine_for(self, due_date: datetime, return_date: datetime) -> Optional[Decimal]:
        """Fine owed for a return at ``return_date``; None when returned on time."""
        days = self.days_late(due_date, return_date)
        if days == 0:
            return None
        return self.fine_per_day * days
