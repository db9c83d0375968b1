"""Output helpers for the debt plan CLI.

This module renders schedules, plans, statistics, rate records and sourcing
reports as plain tab-separated text. It relies only on built-in printing
and string formatting.
"""

from __future__ import annotations

from typing import Dict, Iterable, List

from .data_models import PlanStatistics, ScheduleEntry, SourcingReport
from .store import InterestRateModel, PlanModel


def print_summary(summary: Dict[str, object]) -> None:
    """Print the totals of a schedule in a human-readable format."""
    print("Summary")
    print("-" * 72)
    print(f"Total principal    : {summary['total_principal']:.2f}")
    print(f"Total interest     : {summary['total_interest']:.2f}")
    print(f"Total amount       : {summary['total_amount']:.2f}")
    print(f"Installments       : {summary['installments']}")
    print(f"First due date     : {summary['first_due_date']}")
    print(f"Last due date      : {summary['last_due_date']}")
    if summary.get('max_installment'):
        print(f"Highest installment: {summary['max_installment']:.2f}")
    print("-" * 72)


def print_schedule(schedule: Iterable[ScheduleEntry]) -> None:
    """Print a computed schedule as a simple table."""
    headers = ["No", "Due", "Principal", "Interest", "Amount", "Balance"]
    print("\t".join(headers))
    for entry in schedule:
        row = [
            str(entry.sequence_number),
            entry.due_date.isoformat(),
            f"{entry.principal_portion:.2f}",
            f"{entry.interest_portion:.2f}",
            f"{entry.amount:.2f}",
            f"{entry.balance_after:.2f}",
        ]
        print("\t".join(row))


def print_plan(plan: PlanModel) -> None:
    """Print a stored plan with its installments and payment status."""
    print(f"Plan {plan.id} (case {plan.case_id})")
    print("-" * 72)
    print(f"State              : {plan.state}")
    print(f"Principal          : {plan.principal:.2f}")
    print(f"Start date         : {plan.start_date.isoformat()}")
    if plan.applies_interest:
        print(f"Interest           : {plan.interest_kind.value} {plan.resolved_rate}% ({plan.method.value})")
        print(f"Total interest     : {plan.total_interest:.2f}")
    if plan.close_date:
        print(f"Closed on          : {plan.close_date.isoformat()}")
    print("-" * 72)
    print("\t".join(["No", "Id", "Due", "Principal", "Interest", "Amount", "Paid"]))
    for inst in plan.installments:
        paid = inst.payment_date.isoformat() if inst.paid and inst.payment_date else ("Yes" if inst.paid else "No")
        print("\t".join([
            str(inst.sequence_number),
            inst.id,
            inst.due_date.isoformat(),
            f"{inst.principal_portion:.2f}",
            f"{inst.interest_portion:.2f}",
            f"{inst.amount:.2f}",
            paid,
        ]))


def print_statistics(stats: PlanStatistics) -> None:
    print("Statistics")
    print("-" * 72)
    print(f"Principal          : {stats.principal:.2f}")
    print(f"Paid amount        : {stats.paid_amount:.2f}")
    print(f"Paid principal     : {stats.paid_principal:.2f}")
    print(f"Paid interest      : {stats.paid_interest:.2f}")
    print(f"Outstanding        : {stats.outstanding_principal:.2f}")
    print(f"Installments paid  : {stats.paid_installments}/{stats.installment_count} ({stats.percent_paid}%)")
    print(f"State              : {stats.state.value}")
    if stats.recovered_amount is not None:
        posted = "posted" if stats.amount_posted else "not posted"
        print(f"Recovered          : {stats.recovered_amount:.2f} ({posted})")
    print("-" * 72)


def print_rates(rates: List[InterestRateModel]) -> None:
    print("\t".join(["Id", "Kind", "Rate", "From", "To", "Reference"]))
    for rate in rates:
        print("\t".join([
            rate.id,
            rate.kind.value,
            f"{rate.percentage:.2f}",
            rate.valid_from.isoformat(),
            rate.valid_to.isoformat() if rate.valid_to else "open",
            rate.reference or "",
        ]))


def print_report(report: SourcingReport) -> None:
    """Print the outcome of a sourcing run, candidate by candidate."""
    print(f"Rate fetch at {report.fetched_at.isoformat(timespec='seconds')}")
    print("=" * 72)
    print(f"Fetched            : {report.total_fetched}")
    print(f"Need approval      : {report.needs_approval}")
    print(f"Skipped duplicates : {report.skipped}")
    print(f"Rejected           : {report.rejected}")
    print(f"Source errors      : {report.source_errors}")
    print("=" * 72)
    for c in report.candidates:
        kind = c.kind.value if c.kind else "?"
        window = f"{c.valid_from or '?'}..{c.valid_to or 'open'}"
        print(f"[{c.disposition.value}] {kind} {c.percentage}% {window} from {c.source}")
        for message in c.validation.errors:
            print(f"    error: {message}")
        for message in c.validation.warnings:
            print(f"    warning: {message}")
        if c.duplicate_check.is_duplicate:
            print(f"    duplicate of {c.duplicate_check.matched_id}")
    for failure in report.fetch_errors:
        print(f"Source {failure.source} failed: {failure.message}")
