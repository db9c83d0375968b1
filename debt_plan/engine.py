"""Core calculation engine for debt repayment plans.

This module builds amortization schedules for plans with or without
interest. Interest-bearing schedules support the italian method (constant
principal quota, declining interest) and the french method (constant
installment, growing principal share). Interest for each installment follows
the civil-law simple-interest rule

    interest = balance * rate * days / 36500

where ``days`` are the actual calendar days between the previous due date
(or the interest start date for the first installment) and the current due
date. Results are returned as a list of ``ScheduleEntry`` objects; every
public function is pure.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal, getcontext
from typing import Dict, List, Optional

from .data_models import AmortizationMethod, InterestTerms, ScheduleEntry
from .exceptions import ValidationError
from .utils import add_months, days_between, is_finite, round2

getcontext().prec = 28  # increase precision for financial calculations

_ZERO = Decimal("0")
_DAYS_PERCENT = Decimal("36500")


def _calculate_annuity_payment(principal: Decimal, rate_per_month: Decimal, term: int) -> Decimal:
    """Return the annuity (level installment) monthly payment for a loan.

    The formula is:

        payment = P * (i * (1 + i)^n) / ((1 + i)^n - 1)

    where ``P`` is the principal, ``i`` is the monthly interest rate and
    ``n`` is the number of payments. When the interest rate is zero, the
    payment simplifies to ``P / n``.
    """
    if rate_per_month == 0:
        return principal / Decimal(term)
    factor = (1 + rate_per_month) ** term
    return principal * (rate_per_month * factor) / (factor - 1)


def simple_interest(balance: Decimal, annual_rate: Decimal, days: int) -> Decimal:
    """Return the unrounded simple interest accrued on ``balance`` over ``days``."""
    return balance * annual_rate * Decimal(days) / _DAYS_PERCENT


def due_dates(start_date: date, installment_count: int) -> List[date]:
    """Return the due date of every installment: ``start_date + i`` months."""
    return [add_months(start_date, i) for i in range(installment_count)]


def _validate(principal: Decimal, installment_count: int, terms: Optional[InterestTerms]) -> None:
    if principal is None or not is_finite(principal) or principal <= 0:
        raise ValidationError("Principal must be positive")
    if installment_count is None or installment_count < 1:
        raise ValidationError("Installment count must be at least 1")
    if terms is not None:
        rate = terms.annual_rate
        if rate is None or not is_finite(rate) or rate < 0 or rate > 100:
            raise ValidationError("Annual rate must be between 0 and 100")
        if not isinstance(terms.method, AmortizationMethod):
            raise ValidationError(f"Unknown amortization method: {terms.method!r}")


def compute_schedule(
    principal: Decimal,
    installment_count: int,
    start_date: date,
    terms: Optional[InterestTerms] = None,
) -> List[ScheduleEntry]:
    """Compute the amortization schedule of a plan.

    Parameters
    ----------
    principal: Decimal
        The amount to recover, with two decimals.
    installment_count: int
        Number of monthly installments (at least one).
    start_date: date
        Due date of the first installment; the following ones fall on the
        same day of the following months.
    terms: Optional[InterestTerms]
        ``None`` (or a zero rate) for a schedule without interest, otherwise
        the annual rate, interest start date and method.

    Returns
    -------
    List[ScheduleEntry]
        One entry per installment. The principal portions always sum to
        ``principal`` exactly.
    """
    _validate(principal, installment_count, terms)

    if terms is None or terms.annual_rate == 0:
        return _schedule_without_interest(principal, installment_count, start_date)

    if terms.method is AmortizationMethod.ITALIAN:
        return _schedule_italian(principal, installment_count, start_date, terms)
    if terms.method is AmortizationMethod.FRENCH:
        return _schedule_french(principal, installment_count, start_date, terms)
    raise ValidationError(f"Unknown amortization method: {terms.method!r}")


def _schedule_without_interest(principal: Decimal, installment_count: int, start_date: date) -> List[ScheduleEntry]:
    portion = round2(principal / Decimal(installment_count))
    residual = principal - portion * installment_count

    schedule: List[ScheduleEntry] = []
    balance = principal
    for i, due in enumerate(due_dates(start_date, installment_count)):
        current = portion + residual if i == installment_count - 1 else portion
        balance -= current
        schedule.append(
            ScheduleEntry(
                sequence_number=i + 1,
                due_date=due,
                principal_portion=current,
                interest_portion=_ZERO,
                amount=current,
                balance_after=balance,
            )
        )
    return schedule


def _schedule_italian(
    principal: Decimal, installment_count: int, start_date: date, terms: InterestTerms
) -> List[ScheduleEntry]:
    quota = principal / Decimal(installment_count)
    balance = principal
    previous_due = terms.interest_start_date

    principal_portions: List[Decimal] = []
    interest_portions: List[Decimal] = []
    dates = due_dates(start_date, installment_count)
    for due in dates:
        interest = simple_interest(balance, terms.annual_rate, days_between(previous_due, due))
        principal_portions.append(quota)
        interest_portions.append(interest)
        balance -= quota
        previous_due = due

    return _rounded_schedule(principal, dates, principal_portions, interest_portions)


def _schedule_french(
    principal: Decimal, installment_count: int, start_date: date, terms: InterestTerms
) -> List[ScheduleEntry]:
    rate_per_month = terms.annual_rate / Decimal(100) / Decimal(12)
    level_payment = _calculate_annuity_payment(principal, rate_per_month, installment_count)
    balance = principal
    previous_due = terms.interest_start_date

    principal_portions: List[Decimal] = []
    interest_portions: List[Decimal] = []
    dates = due_dates(start_date, installment_count)
    for i, due in enumerate(dates):
        interest = simple_interest(balance, terms.annual_rate, days_between(previous_due, due))
        if i == installment_count - 1:
            # Last installment closes whatever principal is still outstanding.
            principal_part = balance
        else:
            principal_part = level_payment - interest
        principal_portions.append(principal_part)
        interest_portions.append(interest)
        balance -= principal_part
        previous_due = due

    return _rounded_schedule(principal, dates, principal_portions, interest_portions)


def _rounded_schedule(
    principal: Decimal,
    dates: List[date],
    principal_portions: List[Decimal],
    interest_portions: List[Decimal],
) -> List[ScheduleEntry]:
    """Round portions to cents and reconcile the principal on the last row.

    Every principal portion but the last is rounded on its own; the last one
    takes whatever is left so that the rounded portions sum to ``principal``.
    """
    rounded = [round2(p) for p in principal_portions[:-1]]
    rounded.append(principal - sum(rounded, _ZERO))

    schedule: List[ScheduleEntry] = []
    balance = principal
    for i, due in enumerate(dates):
        interest = round2(interest_portions[i])
        balance -= rounded[i]
        schedule.append(
            ScheduleEntry(
                sequence_number=i + 1,
                due_date=due,
                principal_portion=rounded[i],
                interest_portion=interest,
                amount=rounded[i] + interest,
                balance_after=balance,
            )
        )
    return schedule


def level_payment(principal: Decimal, installment_count: int, annual_rate: Decimal) -> Decimal:
    """Return the unrounded french-method level installment."""
    rate_per_month = annual_rate / Decimal(100) / Decimal(12)
    return _calculate_annuity_payment(principal, rate_per_month, installment_count)


def summarize_schedule(schedule: List[ScheduleEntry]) -> Dict[str, object]:
    """Compute aggregate metrics of a schedule.

    Returns a dictionary with the total principal, total interest, total
    amount, number of installments, first and last due dates and the
    highest installment amount.
    """
    total_principal = sum((e.principal_portion for e in schedule), _ZERO)
    total_interest = sum((e.interest_portion for e in schedule), _ZERO)
    return {
        "total_principal": total_principal,
        "total_interest": total_interest,
        "total_amount": total_principal + total_interest,
        "installments": len(schedule),
        "first_due_date": schedule[0].due_date.isoformat() if schedule else None,
        "last_due_date": schedule[-1].due_date.isoformat() if schedule else None,
        "max_installment": max((e.amount for e in schedule), default=_ZERO),
    }
