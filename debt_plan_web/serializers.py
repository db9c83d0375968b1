"""Conversion between stored entities and JSON payloads of the web API.

Amounts and percentages travel as strings (``"1234.50"``) so no precision is
lost; dates are ISO ``YYYY-MM-DD`` strings.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from debt_plan.data_models import (
    AmortizationMethod,
    CandidateRate,
    FixedInterest,
    InterestConfig,
    LegalInterest,
    MoratoryInterest,
    NoInterest,
    PlanStatistics,
    RateKind,
    SourcingReport,
)
from debt_plan.exceptions import ValidationError
from debt_plan.store import InstallmentModel, InterestRateModel, PlanModel


def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else f"{Decimal(value):.2f}"


def _iso(value: Optional[date]) -> Optional[str]:
    return None if value is None else value.isoformat()


def decimal_field(payload: Dict[str, Any], name: str, required: bool = True) -> Optional[Decimal]:
    value = payload.get(name)
    if value is None or value == "":
        if required:
            raise ValidationError(f"Field '{name}' is required")
        return None
    try:
        number = Decimal(str(value).replace(",", "."))
    except InvalidOperation:
        raise ValidationError(f"Field '{name}' is not a number: {value!r}")
    if not number.is_finite():
        raise ValidationError(f"Field '{name}' must be a finite number: {value!r}")
    return number


def date_field(payload: Dict[str, Any], name: str, required: bool = True) -> Optional[date]:
    value = payload.get(name)
    if value is None or value == "":
        if required:
            raise ValidationError(f"Field '{name}' is required")
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"Field '{name}' is not a YYYY-MM-DD date: {value!r}")


def enum_field(payload: Dict[str, Any], name: str, enum_cls, default=None):
    value = payload.get(name)
    if value is None:
        if default is None:
            raise ValidationError(f"Field '{name}' is required")
        return default
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Field '{name}' must be one of: {allowed}")


def interest_from_payload(payload: Dict[str, Any]) -> InterestConfig:
    """Read the ``interest`` object of a plan creation request.

    ``{"kind": "moratory", "pre2013": true, "surcharge": true, "surcharge_points": "4"}``
    or ``{"kind": "fixed", "rate": "5"}``; a missing object means no interest.
    """
    interest = payload.get("interest")
    if interest is None:
        interest = {}
    if not isinstance(interest, dict):
        raise ValidationError("Field 'interest' must be a JSON object")
    kind = interest.get("kind", "none")
    if kind == "none":
        return NoInterest()
    if kind == "legal":
        return LegalInterest()
    if kind == "moratory":
        return MoratoryInterest(
            pre2013=bool(interest.get("pre2013", False)),
            surcharge=bool(interest.get("surcharge", False)),
            surcharge_points=decimal_field(interest, "surcharge_points", required=False),
        )
    if kind == "fixed":
        return FixedInterest(rate=decimal_field(interest, "rate", required=False))
    raise ValidationError(f"Unknown interest kind: {kind!r}")


def installment_to_dict(inst: InstallmentModel) -> Dict[str, Any]:
    return {
        "id": inst.id,
        "sequence_number": inst.sequence_number,
        "due_date": _iso(inst.due_date),
        "amount": _money(inst.amount),
        "principal_portion": _money(inst.principal_portion),
        "interest_portion": _money(inst.interest_portion),
        "paid": inst.paid,
        "payment_date": _iso(inst.payment_date),
        "payment_method": inst.payment_method,
        "payment_reference": inst.payment_reference,
        "receipt_location": inst.receipt_location,
        "principal_movement_id": inst.principal_movement_id,
        "interest_movement_id": inst.interest_movement_id,
        "note": inst.note,
    }


def plan_to_dict(plan: PlanModel) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "case_id": plan.case_id,
        "principal": _money(plan.principal),
        "installment_count": plan.installment_count,
        "start_date": _iso(plan.start_date),
        "state": plan.state,
        "close_date": _iso(plan.close_date),
        "recovered_amount": _money(plan.recovered_amount),
        "amount_posted": plan.amount_posted,
        "applies_interest": plan.applies_interest,
        "interest_kind": plan.interest_kind.value if plan.interest_kind else None,
        "resolved_rate": _money(plan.resolved_rate),
        "method": plan.method.value,
        "interest_start_date": _iso(plan.interest_start_date),
        "total_interest": _money(plan.total_interest),
        "note": plan.note,
        "installments": [installment_to_dict(i) for i in plan.installments],
    }


def statistics_to_dict(stats: PlanStatistics) -> Dict[str, Any]:
    return {
        "principal": _money(stats.principal),
        "paid_amount": _money(stats.paid_amount),
        "paid_principal": _money(stats.paid_principal),
        "paid_interest": _money(stats.paid_interest),
        "outstanding_principal": _money(stats.outstanding_principal),
        "total_interest": _money(stats.total_interest),
        "installment_count": stats.installment_count,
        "paid_installments": stats.paid_installments,
        "open_installments": stats.open_installments,
        "percent_paid": _money(stats.percent_paid),
        "state": stats.state.value,
        "recovered_amount": _money(stats.recovered_amount),
        "amount_posted": stats.amount_posted,
        "close_date": _iso(stats.close_date),
    }


def rate_to_dict(rate: InterestRateModel) -> Dict[str, Any]:
    return {
        "id": rate.id,
        "kind": rate.kind.value,
        "percentage": _money(rate.percentage),
        "valid_from": _iso(rate.valid_from),
        "valid_to": _iso(rate.valid_to),
        "reference": rate.reference,
        "note": rate.note,
    }


def candidate_to_dict(candidate: CandidateRate) -> Dict[str, Any]:
    return {
        "kind": candidate.kind.value if candidate.kind else None,
        "percentage": _money(candidate.percentage),
        "valid_from": _iso(candidate.valid_from),
        "valid_to": _iso(candidate.valid_to),
        "reference": candidate.reference,
        "note": candidate.note,
        "source": candidate.source,
        "source_url": candidate.source_url,
        "fetched_at": candidate.fetched_at.isoformat(),
        "is_official": candidate.is_official,
        "calculation_details": candidate.calculation_details,
        "validation": {
            "valid": candidate.validation.valid,
            "errors": list(candidate.validation.errors),
            "warnings": list(candidate.validation.warnings),
        },
        "duplicate_check": {
            "is_duplicate": candidate.duplicate_check.is_duplicate,
            "matched_id": candidate.duplicate_check.matched_id,
            "reason": candidate.duplicate_check.reason,
        },
        "disposition": candidate.disposition.value if candidate.disposition else None,
    }


def candidate_from_dict(payload: Dict[str, Any]) -> CandidateRate:
    """Rebuild a reviewed candidate sent back by the client for approval."""
    fetched_at = payload.get("fetched_at")
    try:
        fetched = datetime.fromisoformat(fetched_at) if fetched_at else datetime.now()
    except ValueError:
        raise ValidationError(f"Field 'fetched_at' is not an ISO timestamp: {fetched_at!r}")
    return CandidateRate(
        kind=enum_field(payload, "kind", RateKind),
        percentage=decimal_field(payload, "percentage"),
        valid_from=date_field(payload, "valid_from"),
        valid_to=date_field(payload, "valid_to", required=False),
        source=payload.get("source") or "manual",
        source_url=payload.get("source_url") or "",
        fetched_at=fetched,
        is_official=bool(payload.get("is_official", False)),
        reference=payload.get("reference"),
        note=payload.get("note"),
        calculation_details=payload.get("calculation_details"),
    )


def report_to_dict(report: SourcingReport) -> Dict[str, Any]:
    return {
        "fetched_at": report.fetched_at.isoformat(),
        "total_fetched": report.total_fetched,
        "needs_approval": report.needs_approval,
        "skipped": report.skipped,
        "rejected": report.rejected,
        "source_errors": report.source_errors,
        "candidates": [candidate_to_dict(c) for c in report.candidates],
        "fetch_errors": [
            {"source": f.source, "message": f.message, "url": f.url} for f in report.fetch_errors
        ],
    }


def method_from_payload(payload: Dict[str, Any]) -> AmortizationMethod:
    return enum_field(payload, "method", AmortizationMethod, default=AmortizationMethod.ITALIAN)
