"""Data models for the debt plan engine.

This module defines the enumerations and dataclasses shared by the engine,
the lifecycle service and the rate sourcing pipeline: the closed tag types
(rate kind, amortization method, plan state, ...), the interest
configuration sum type, computed schedule entries and the transient
candidate rates produced by the pipeline. Persisted entities live in
``store.py``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union


class RateKind(str, Enum):
    """Kind of a registry interest rate."""

    LEGAL = "legal"
    MORATORY = "moratory"


class InterestKind(str, Enum):
    """Kind of interest applied to a plan."""

    LEGAL = "legal"
    MORATORY = "moratory"
    FIXED = "fixed"


class AmortizationMethod(str, Enum):
    """``italian`` keeps the principal quota constant, ``french`` the payment."""

    ITALIAN = "italian"
    FRENCH = "french"


class PlanState(str, Enum):
    ACTIVE = "active"
    # Reserved: no operation moves a plan in or out of this state.
    SUSPENDED = "suspended"
    CLOSED_POSITIVE = "closed_positive"
    CLOSED_NEGATIVE = "closed_negative"


class CloseOutcome(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


class MovementKind(str, Enum):
    """Ledger movement kinds posted by the lifecycle service."""

    PRINCIPAL_RECOVERY = "principal_recovery"
    INTEREST_RECOVERY = "interest_recovery"
    INTEREST_ACCRUED = "interest_accrued"


class HistoryEvent(str, Enum):
    """Case-history event types emitted by the lifecycle service."""

    PLAN_CREATED = "plan_created"
    PLAN_PAYMENT = "plan_payment"
    PLAN_REVERSAL = "plan_reversal"
    PLAN_CLOSED = "plan_closed"
    PLAN_REOPENED = "plan_reopened"
    MOVEMENT_INSERTED = "movement_inserted"
    MOVEMENT_DELETED = "movement_deleted"


class Disposition(str, Enum):
    """Classification of a candidate rate after validation and duplicate check."""

    NEEDS_APPROVAL = "needs_approval"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    REJECTED_INVALID = "rejected_invalid"


# Interest configuration: exactly one of these describes how a plan bears
# interest, so the optional fields of one variant never leak into another.


@dataclass(frozen=True)
class NoInterest:
    pass


@dataclass(frozen=True)
class LegalInterest:
    pass


@dataclass(frozen=True)
class MoratoryInterest:
    """Moratory interest with its optional statutory adjustments.

    Attributes
    ----------
    pre2013: bool
        The underlying transaction was concluded before 2013; the registry
        rate is reduced by one point (never below zero).
    surcharge: bool
        Apply the additional surcharge (agricultural and food products).
    surcharge_points: Optional[Decimal]
        Points added when ``surcharge`` is set. ``None`` means the
        configured default.
    """

    pre2013: bool = False
    surcharge: bool = False
    surcharge_points: Optional[Decimal] = None


@dataclass(frozen=True)
class FixedInterest:
    rate: Optional[Decimal]


InterestConfig = Union[NoInterest, LegalInterest, MoratoryInterest, FixedInterest]


def interest_kind_of(config: InterestConfig) -> Optional[InterestKind]:
    """Return the ``InterestKind`` tag of an interest configuration."""
    if isinstance(config, NoInterest):
        return None
    if isinstance(config, LegalInterest):
        return InterestKind.LEGAL
    if isinstance(config, MoratoryInterest):
        return InterestKind.MORATORY
    if isinstance(config, FixedInterest):
        return InterestKind.FIXED
    raise TypeError(f"Unknown interest configuration: {config!r}")


@dataclass(frozen=True)
class InterestTerms:
    """Resolved interest inputs for the amortization engine."""

    annual_rate: Decimal  # percent, e.g. Decimal("5") for 5 %
    interest_start_date: date
    method: AmortizationMethod = AmortizationMethod.ITALIAN


@dataclass
class ScheduleEntry:
    """One computed installment of an amortization schedule.

    ``amount`` always equals ``principal_portion + interest_portion``; all
    values are rounded to cents. ``balance_after`` is the outstanding
    principal once this installment is paid.
    """

    sequence_number: int
    due_date: date
    principal_portion: Decimal
    interest_portion: Decimal
    amount: Decimal
    balance_after: Decimal


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False


@dataclass
class DuplicateCheck:
    is_duplicate: bool = False
    matched_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class CandidateRate:
    """A rate parsed from an external source, pending human review.

    The pipeline fills ``validation``, ``duplicate_check`` and
    ``disposition``; a candidate is never persisted until approved.
    """

    kind: Optional[RateKind]
    percentage: Optional[Decimal]
    valid_from: Optional[date]
    valid_to: Optional[date]
    source: str
    source_url: str
    fetched_at: datetime
    is_official: bool
    reference: Optional[str] = None
    note: Optional[str] = None
    calculation_details: Optional[str] = None
    validation: ValidationResult = field(default_factory=ValidationResult)
    duplicate_check: DuplicateCheck = field(default_factory=DuplicateCheck)
    disposition: Optional[Disposition] = None


@dataclass
class SourceFailure:
    """A per-source failure collected by the sourcing pipeline."""

    source: str
    message: str
    url: Optional[str] = None


@dataclass
class SourcingReport:
    """Aggregate result of one sourcing run."""

    fetched_at: datetime
    total_fetched: int = 0
    needs_approval: int = 0
    skipped: int = 0
    rejected: int = 0
    candidates: List[CandidateRate] = field(default_factory=list)
    fetch_errors: List[SourceFailure] = field(default_factory=list)

    @property
    def source_errors(self) -> int:
        return len(self.fetch_errors)


@dataclass
class PlanStatistics:
    principal: Decimal
    paid_amount: Decimal
    paid_principal: Decimal
    paid_interest: Decimal
    outstanding_principal: Decimal
    total_interest: Decimal
    installment_count: int
    paid_installments: int
    open_installments: int
    percent_paid: Decimal
    state: PlanState
    recovered_amount: Optional[Decimal]
    amount_posted: bool
    close_date: Optional[date]
