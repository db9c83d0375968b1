"""Command-line interface for debt repayment plans.

This module uses the ``click`` library to implement a multi-command
interface. Users can compute schedules offline, manage the interest rate
registry, create and follow repayment plans, run the rate sourcing pipeline
and invoke the monitoring duties from cron. Schedules can be printed to the
terminal or exported to JSON/CSV files.
"""

from __future__ import annotations

import csv
import functools
import json
from dataclasses import asdict
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from .config import DebtPlanConfig
from .data_models import (
    AmortizationMethod,
    CandidateRate,
    CloseOutcome,
    Disposition,
    FixedInterest,
    InterestConfig,
    InterestTerms,
    LegalInterest,
    MoratoryInterest,
    NoInterest,
    RateKind,
    ScheduleEntry,
)
from .engine import compute_schedule, summarize_schedule
from .exceptions import DebtPlanError
from .formatter import print_plan, print_rates, print_report, print_schedule, print_statistics, print_summary
from .logging import setup_logging
from .monitor import TRIGGER_MANUAL, TRIGGER_SCHEDULED
from .services import Services
from .utils import decimal_from_str, parse_iso_date


def parse_amount(value: str) -> Decimal:
    """Parse a numeric string with optional ``k``/``m`` suffixes ("12.5k" is 12500)."""
    value = value.strip().lower().replace(",", "")
    factor = Decimal(1)
    if value.endswith("k"):
        factor = Decimal(1_000)
        value = value[:-1]
    elif value.endswith("m"):
        factor = Decimal(1_000_000)
        value = value[:-1]
    try:
        return decimal_from_str(value) * factor
    except ValueError:
        raise click.BadParameter(f"Invalid amount: {value}")


def parse_percent(value: str) -> Decimal:
    """Parse a percentage such as "2.5", "2,5" or "2.5%"."""
    value = value.strip().rstrip("%").replace(",", ".")
    try:
        return decimal_from_str(value)
    except ValueError:
        raise click.BadParameter(f"Invalid percentage: {value}")


def parse_date_option(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    try:
        return parse_iso_date(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc))


def build_interest(
    interest: str,
    rate: Optional[str],
    pre2013: bool,
    surcharge: bool,
    surcharge_points: Optional[str],
) -> InterestConfig:
    if interest == "none":
        return NoInterest()
    if interest == "legal":
        return LegalInterest()
    if interest == "moratory":
        points = parse_percent(surcharge_points) if surcharge_points else None
        return MoratoryInterest(pre2013=pre2013, surcharge=surcharge, surcharge_points=points)
    if rate is None:
        raise click.BadParameter("--rate is required with --interest fixed")
    return FixedInterest(rate=parse_percent(rate))


def _entry_dict(e: ScheduleEntry) -> Dict[str, Any]:
    return {
        "sequence_number": e.sequence_number,
        "due_date": e.due_date.isoformat(),
        "principal": float(e.principal_portion),
        "interest": float(e.interest_portion),
        "amount": float(e.amount),
        "balance_after": float(e.balance_after),
    }


def export_to_json(path: Path, schedule: List[ScheduleEntry], summary: Dict[str, Any]) -> None:
    """Export schedule and summary to a JSON file."""
    data = {"summary": summary, "schedule": [_entry_dict(e) for e in schedule]}
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, default=str)


def export_to_csv(path: Path, schedule: List[ScheduleEntry]) -> None:
    """Export schedule to a CSV file."""
    header = ["Number", "Due_Date", "Principal", "Interest", "Amount", "Balance_After"]
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        for e in schedule:
            writer.writerow(
                [
                    e.sequence_number,
                    e.due_date.isoformat(),
                    f"{e.principal_portion:.2f}",
                    f"{e.interest_portion:.2f}",
                    f"{e.amount:.2f}",
                    f"{e.balance_after:.2f}",
                ]
            )


def handle_errors(func):
    """Report business-rule errors as click errors instead of tracebacks."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DebtPlanError as exc:
            raise click.ClickException(f"[{exc.code}] {exc}")

    return wrapper


pass_services = click.make_pass_decorator(Services)


@click.group()
@click.option("--database-url", "database_url", envvar="DEBT_PLAN_DATABASE_URL", help="SQLAlchemy database URL")
@click.option("--log-level", "log_level", help="Log level (DEBUG, INFO, WARNING, ...)")
@click.pass_context
def cli(ctx: click.Context, database_url: Optional[str], log_level: Optional[str]) -> None:
    """Debt repayment plans, interest rate registry and rate sourcing."""
    if isinstance(ctx.obj, Services):
        return
    try:
        config = DebtPlanConfig.from_env()
    except DebtPlanError as exc:
        raise click.ClickException(f"[{exc.code}] {exc}")
    if database_url:
        config.database_url = database_url
    if log_level:
        config.log_level = log_level
    setup_logging(config.log_level, config.log_format)
    ctx.obj = Services(config)


@cli.command()
@click.option("--principal", "-p", "principal", required=True, help="Amount to recover")
@click.option("--installments", "-n", "installments", required=True, type=int, help="Number of monthly installments")
@click.option("--start-date", "-s", "start_date", required=True, help="First due date (YYYY-MM-DD)")
@click.option("--rate", "-r", "rate", help="Annual interest rate (percent); omit for no interest")
@click.option("--method", "method", type=click.Choice([m.value for m in AmortizationMethod]), default="italian")
@click.option("--interest-start", "interest_start", help="Interest start date (YYYY-MM-DD), default start date")
@click.option("--output", "output", type=str, help="Output file path (.json or .csv)")
@handle_errors
def schedule(
    principal: str,
    installments: int,
    start_date: str,
    rate: Optional[str],
    method: str,
    interest_start: Optional[str],
    output: Optional[str],
) -> None:
    """Compute and print an amortization schedule without storing it."""
    start = parse_date_option(start_date)
    terms = None
    if rate is not None:
        terms = InterestTerms(
            annual_rate=parse_percent(rate),
            interest_start_date=parse_date_option(interest_start) or start,
            method=AmortizationMethod(method),
        )
    entries = compute_schedule(parse_amount(principal), installments, start, terms)
    summary = summarize_schedule(entries)
    if output:
        path = Path(output)
        if path.suffix.lower() == ".json":
            export_to_json(path, entries, summary)
            click.echo(f"Schedule exported to {path}")
        elif path.suffix.lower() == ".csv":
            export_to_csv(path, entries)
            click.echo(f"Schedule exported to {path}")
        else:
            raise click.BadParameter("Unsupported output format; use .json or .csv")
    else:
        print_summary(summary)
        print_schedule(entries)


# ----------------------------------------------------------------------
# Rates


@cli.group()
def rates() -> None:
    """Manage the interest rate registry."""


@rates.command("list")
@click.option("--kind", type=click.Choice([k.value for k in RateKind]), help="Only rates of this kind")
@pass_services
@handle_errors
def rates_list(services: Services, kind: Optional[str]) -> None:
    records = services.registry.list_by_kind(RateKind(kind)) if kind else services.registry.list_rates()
    print_rates(records)


@rates.command("add")
@click.option("--kind", required=True, type=click.Choice([k.value for k in RateKind]))
@click.option("--percentage", required=True, help="Annual rate in percent")
@click.option("--from", "valid_from", required=True, help="Validity start (YYYY-MM-DD)")
@click.option("--to", "valid_to", help="Validity end (YYYY-MM-DD); open ended when omitted")
@click.option("--reference", help="Legal reference")
@click.option("--note")
@click.option("--allow-overlap", is_flag=True, help="Accept a period overlapping an existing rate")
@pass_services
@handle_errors
def rates_add(
    services: Services,
    kind: str,
    percentage: str,
    valid_from: str,
    valid_to: Optional[str],
    reference: Optional[str],
    note: Optional[str],
    allow_overlap: bool,
) -> None:
    rate = services.registry.create(
        RateKind(kind),
        parse_percent(percentage),
        parse_date_option(valid_from),
        parse_date_option(valid_to),
        reference=reference,
        note=note,
        allow_overlap=allow_overlap,
    )
    click.echo(f"Created {rate.kind.value} rate {rate.percentage}% ({rate.id})")


@rates.command("delete")
@click.argument("rate_id")
@pass_services
@handle_errors
def rates_delete(services: Services, rate_id: str) -> None:
    services.registry.delete(rate_id)
    click.echo(f"Deleted rate {rate_id}")


@rates.command("resolve")
@click.option("--kind", required=True, type=click.Choice([k.value for k in RateKind]))
@click.option("--date", "on_date", help="Reference date (YYYY-MM-DD), default today")
@pass_services
@handle_errors
def rates_resolve(services: Services, kind: str, on_date: Optional[str]) -> None:
    """Show the rate that applies to a date."""
    rate = services.registry.resolve(RateKind(kind), parse_date_option(on_date))
    if rate is None:
        raise click.ClickException(f"No {kind} rate available")
    print_rates([rate])


@rates.command("current")
@pass_services
@handle_errors
def rates_current(services: Services) -> None:
    """Show the rates valid today."""
    print_rates(services.registry.current_rates())


# ----------------------------------------------------------------------
# Plans


@cli.group()
def plans() -> None:
    """Create and follow repayment plans."""


@plans.command("create")
@click.option("--case", "case_id", required=True, help="Case identifier")
@click.option("--principal", "-p", "principal", required=True)
@click.option("--installments", "-n", "installments", required=True, type=int)
@click.option("--start-date", "-s", "start_date", required=True, help="First due date (YYYY-MM-DD)")
@click.option("--interest", type=click.Choice(["none", "legal", "moratory", "fixed"]), default="none")
@click.option("--rate", help="Annual rate for fixed interest")
@click.option("--method", type=click.Choice([m.value for m in AmortizationMethod]), default="italian")
@click.option("--interest-start", "interest_start", help="Interest start date (YYYY-MM-DD)")
@click.option("--pre2013", is_flag=True, help="Moratory: transaction concluded before 2013")
@click.option("--surcharge", is_flag=True, help="Moratory: apply the surcharge")
@click.option("--surcharge-points", "surcharge_points", help="Moratory: surcharge points")
@click.option("--note")
@pass_services
@handle_errors
def plans_create(
    services: Services,
    case_id: str,
    principal: str,
    installments: int,
    start_date: str,
    interest: str,
    rate: Optional[str],
    method: str,
    interest_start: Optional[str],
    pre2013: bool,
    surcharge: bool,
    surcharge_points: Optional[str],
    note: Optional[str],
) -> None:
    plan = services.plans.create_plan(
        case_id,
        parse_amount(principal),
        installments,
        parse_date_option(start_date),
        interest=build_interest(interest, rate, pre2013, surcharge, surcharge_points),
        method=AmortizationMethod(method),
        interest_start_date=parse_date_option(interest_start),
        note=note,
    )
    print_plan(plan)


@plans.command("show")
@click.argument("case_id")
@pass_services
@handle_errors
def plans_show(services: Services, case_id: str) -> None:
    """Show the latest plan of a case."""
    plan = services.plans.get_plan_by_case(case_id)
    if plan is None:
        raise click.ClickException(f"Case {case_id} has no plan")
    print_plan(plan)


@plans.command("stats")
@click.argument("plan_id")
@pass_services
@handle_errors
def plans_stats(services: Services, plan_id: str) -> None:
    print_statistics(services.plans.get_statistics(plan_id))


@plans.command("pay")
@click.argument("installment_id")
@click.option("--date", "payment_date", help="Payment date (YYYY-MM-DD), default today")
@click.option("--method", "payment_method")
@click.option("--reference", "payment_reference")
@pass_services
@handle_errors
def plans_pay(
    services: Services,
    installment_id: str,
    payment_date: Optional[str],
    payment_method: Optional[str],
    payment_reference: Optional[str],
) -> None:
    inst = services.plans.pay_installment(
        installment_id,
        payment_date=parse_date_option(payment_date),
        payment_method=payment_method,
        payment_reference=payment_reference,
    )
    click.echo(f"Installment {inst.sequence_number} paid on {inst.payment_date.isoformat()}")


@plans.command("reverse")
@click.argument("installment_id")
@pass_services
@handle_errors
def plans_reverse(services: Services, installment_id: str) -> None:
    inst = services.plans.reverse_installment(installment_id)
    click.echo(f"Payment of installment {inst.sequence_number} reversed")


@plans.command("close")
@click.argument("plan_id")
@click.option("--outcome", required=True, type=click.Choice([o.value for o in CloseOutcome]))
@click.option("--note")
@pass_services
@handle_errors
def plans_close(services: Services, plan_id: str, outcome: str, note: Optional[str]) -> None:
    plan = services.plans.close_plan(plan_id, CloseOutcome(outcome), note=note)
    click.echo(f"Plan {plan.id} closed ({plan.state}), recovered {plan.recovered_amount:.2f}")


@plans.command("reopen")
@click.argument("plan_id")
@pass_services
@handle_errors
def plans_reopen(services: Services, plan_id: str) -> None:
    plan = services.plans.reopen_plan(plan_id)
    click.echo(f"Plan {plan.id} reopened")


# ----------------------------------------------------------------------
# Sourcing and monitoring


@cli.group()
def sourcing() -> None:
    """Fetch interest rates from external publishers."""


def _candidate_label(candidate: CandidateRate) -> str:
    return f"{candidate.kind.value} {candidate.percentage}% from {candidate.valid_from} ({candidate.source})"


@sourcing.command("fetch")
@click.option("--review", is_flag=True, help="Ask whether to approve each candidate")
@click.option("--output", type=str, help="Write the report to a JSON file")
@pass_services
@handle_errors
def sourcing_fetch(services: Services, review: bool, output: Optional[str]) -> None:
    """Run the sourcing pipeline once; nothing is stored without approval."""
    report = services.monitor.run_sourcing(TRIGGER_MANUAL)
    print_report(report)

    if review:
        for candidate in report.candidates:
            if candidate.disposition is Disposition.NEEDS_APPROVAL:
                if click.confirm(f"Approve {_candidate_label(candidate)}?", default=False):
                    rate = services.pipeline.approve(candidate)
                    click.echo(f"Created rate {rate.id}")
            elif candidate.disposition is Disposition.SKIPPED_DUPLICATE:
                existing = candidate.duplicate_check.matched_id
                if click.confirm(f"Overwrite rate {existing} with {_candidate_label(candidate)}?", default=False):
                    services.pipeline.overwrite(candidate, existing)
                    click.echo(f"Updated rate {existing}")

    if output:
        path = Path(output)
        with path.open("w", encoding="utf-8") as f:
            json.dump(asdict(report), f, indent=2, default=str)
        click.echo(f"Report exported to {path}")


@cli.group()
def monitor() -> None:
    """Scheduled checks, meant to be run from cron."""


@monitor.command("expiry-check")
@pass_services
@handle_errors
def monitor_expiry_check(services: Services) -> None:
    expiring = services.monitor.run_expiry_check()
    click.echo(f"{len(expiring)} rates expiring soon")


@monitor.command("missing-check")
@pass_services
@handle_errors
def monitor_missing_check(services: Services) -> None:
    missing = services.monitor.run_missing_check()
    if missing:
        click.echo("Missing rates: " + ", ".join(kind.value for kind in missing))
    else:
        click.echo("All rate kinds covered")


@monitor.command("scheduled-fetch")
@pass_services
@handle_errors
def monitor_scheduled_fetch(services: Services) -> None:
    report = services.monitor.run_sourcing(TRIGGER_SCHEDULED)
    if report is None:
        click.echo("Scheduled fetch skipped")
    else:
        click.echo(f"{report.needs_approval} rates need approval, {report.source_errors} source errors")


if __name__ == "__main__":
    cli()
