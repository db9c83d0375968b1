"""Scheduled duties that watch the rate registry.

Each duty is a plain method meant to be invoked by an external scheduler
(cron running the ``debt-plan monitor`` commands):

* ``run_expiry_check`` - daily; one notification per record whose validity
  ends within the horizon;
* ``run_missing_check`` - weekly; one critical notification per rate kind
  with no usable record today;
* ``run_sourcing`` - weekly or on demand; runs the sourcing pipeline and
  alerts administrators when candidates await approval.

The duties only read the registry and emit notifications, so running them
twice or concurrently is harmless.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Callable, List, Optional

from .collaborators import Notifier
from .config import MonitorConfig, SourcingConfig
from .data_models import Disposition, RateKind, SourcingReport
from .logging import get_logger
from .pipeline import RateSourcingPipeline
from .registry import RateRegistry
from .store import InterestRateModel

logger = get_logger(__name__)

RATE_EXPIRING = "rate_expiring"
RATE_MISSING = "rate_missing"
RATES_NEED_APPROVAL = "rates_need_approval"

TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MANUAL = "manual"


class RateMonitor:
    def __init__(
        self,
        registry: RateRegistry,
        notifier: Notifier,
        pipeline: Optional[RateSourcingPipeline] = None,
        monitor_config: Optional[MonitorConfig] = None,
        sourcing_config: Optional[SourcingConfig] = None,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self._registry = registry
        self._notifier = notifier
        self._pipeline = pipeline
        self._config = monitor_config or MonitorConfig()
        self._sourcing = sourcing_config or SourcingConfig()
        self._clock = clock

    def run_expiry_check(self, today: Optional[date] = None) -> List[InterestRateModel]:
        """Notify about every record whose ``valid_to`` falls in ``[today, today + horizon]``."""
        today = today or self._clock()
        until = today + timedelta(days=self._config.expiry_horizon_days)
        expiring = self._registry.expiring_between(today, until)
        for rate in expiring:
            self._notifier.notify(
                self._config.audience,
                RATE_EXPIRING,
                "Interest rate expiring",
                f"The {rate.kind.value} rate {rate.percentage}% expires on {rate.valid_to.isoformat()}.",
                {
                    "rate_id": rate.id,
                    "kind": rate.kind.value,
                    "valid_to": rate.valid_to.isoformat(),
                    "action": "fetch-rates",
                },
            )
        logger.info("Expiry check for %s..%s: %d rates expiring", today, until, len(expiring))
        return expiring

    def run_missing_check(self, today: Optional[date] = None) -> List[RateKind]:
        """Notify, as critical, every rate kind with no record usable today."""
        today = today or self._clock()
        missing = [kind for kind in RateKind if not self._registry.has_valid_rate(kind, today)]
        for kind in missing:
            self._notifier.notify(
                self._config.audience,
                RATE_MISSING,
                f"No valid {kind.value} rate",
                f"No {kind.value} interest rate is valid for {today.isoformat()}.",
                {"kind": kind.value, "severity": "critical", "action": "fetch-rates"},
            )
        if missing:
            logger.warning("Missing rates on %s: %s", today, ", ".join(k.value for k in missing))
        else:
            logger.info("Rate registry covers every kind on %s", today)
        return missing

    def run_sourcing(self, trigger: str = TRIGGER_MANUAL) -> Optional[SourcingReport]:
        """Run the sourcing pipeline.

        Scheduled runs are skipped when sourcing is disabled and log, rather
        than raise, an unexpected failure. Manual runs always execute and
        propagate errors to the caller.
        """
        if self._pipeline is None:
            raise RuntimeError("RateMonitor was built without a sourcing pipeline")

        if trigger == TRIGGER_SCHEDULED:
            if not self._sourcing.enabled:
                logger.debug("Scheduled rate fetch skipped: sourcing disabled")
                return None
            try:
                report = self._pipeline.run()
            except Exception:
                logger.exception("Scheduled rate fetch failed")
                return None
        else:
            report = self._pipeline.run()

        self._log_report(report, trigger)
        if report.needs_approval > 0:
            self._notifier.notify(
                self._config.audience,
                RATES_NEED_APPROVAL,
                "New interest rates to review",
                f"{report.needs_approval} fetched rates need manual approval.",
                {"needs_approval": report.needs_approval, "trigger": trigger, "action": "review-rates"},
            )
        return report

    @staticmethod
    def _log_report(report: SourcingReport, trigger: str) -> None:
        logger.info(
            "Rate fetch (%s) at %s: %d fetched, %d need approval, %d skipped, %d rejected, %d source errors",
            trigger,
            report.fetched_at.isoformat(timespec="seconds"),
            report.total_fetched,
            report.needs_approval,
            report.skipped,
            report.rejected,
            report.source_errors,
            extra={
                "extra": {
                    "trigger": trigger,
                    "total_fetched": report.total_fetched,
                    "needs_approval": report.needs_approval,
                    "skipped": report.skipped,
                    "rejected": report.rejected,
                    "source_errors": report.source_errors,
                }
            },
        )
        for candidate in report.candidates:
            if candidate.disposition is Disposition.NEEDS_APPROVAL:
                logger.warning(
                    "Needs approval: %s %s%% from %s (%s)",
                    candidate.kind.value,
                    candidate.percentage,
                    candidate.source,
                    ", ".join(candidate.validation.warnings) or "no warnings",
                )
        for failure in report.fetch_errors:
            logger.error("Source %s failed: %s", failure.source, failure.message)
