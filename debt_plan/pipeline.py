"""Rate sourcing pipeline: fetch, validate, de-duplicate and classify.

A run queries every configured source in turn. Each candidate it returns is
validated, then checked against the registry for an overlapping record of
the same kind, and classified:

* ``rejected_invalid`` - a required field is missing or out of range;
* ``skipped_duplicate`` - the registry already covers the period;
* ``needs_approval`` - everything else, official sources included.

Nothing is written to the registry by a run. ``approve`` and ``overwrite``
are the explicit operations that turn a reviewed candidate into a registry
record.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .data_models import CandidateRate, Disposition, DuplicateCheck, SourceFailure, SourcingReport, ValidationResult
from .exceptions import ExternalFetchError, ValidationError
from .fetcher import HttpFetcher
from .logging import get_logger
from .registry import RateRegistry
from .sources import RateSource
from .store import InterestRateModel
from .utils import is_finite

logger = get_logger(__name__)


def validate_candidate(candidate: CandidateRate) -> ValidationResult:
    """Check required fields, the percentage range and the validity window."""
    result = ValidationResult()
    if candidate.kind is None:
        result.add_error("Rate kind is missing")
    if candidate.percentage is None:
        result.add_error("Rate percentage is missing")
    elif not is_finite(candidate.percentage) or candidate.percentage < 0 or candidate.percentage > 100:
        result.add_error("Rate percentage must be between 0 and 100")
    if candidate.valid_from is None:
        result.add_error("Validity start date is missing")
    elif candidate.valid_to is not None and candidate.valid_from > candidate.valid_to:
        result.add_error("Validity start date cannot be after the end date")

    if not candidate.reference:
        result.warnings.append("Legal reference not specified")
    if not candidate.is_official:
        result.warnings.append("Unofficial source, manual verification required")
    return result


class RateSourcingPipeline:
    def __init__(
        self,
        sources: Sequence[RateSource],
        fetcher: HttpFetcher,
        registry: RateRegistry,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._sources = list(sources)
        self._fetcher = fetcher
        self._registry = registry
        self._now = now

    def run(self) -> SourcingReport:
        """Query every source and classify the candidates.

        Source failures are logged and reported; they never stop the run.
        """
        logger.info("Fetching interest rates from %d sources", len(self._sources))
        report = SourcingReport(fetched_at=self._now())

        candidates: List[CandidateRate] = []
        for source in self._sources:
            try:
                fetched = source.fetch(self._fetcher)
            except ExternalFetchError as exc:
                logger.warning("Source %s failed: %s", source.name, exc)
                report.fetch_errors.append(SourceFailure(source=source.name, message=str(exc), url=source.url))
                continue
            except Exception as exc:
                logger.exception("Source %s failed unexpectedly", source.name)
                report.fetch_errors.append(
                    SourceFailure(source=source.name, message=f"{exc.__class__.__name__}: {exc}", url=source.url)
                )
                continue
            logger.info("Fetched %d rates from %s", len(fetched), source.name)
            candidates.extend(fetched)

        report.total_fetched = len(candidates)
        for candidate in candidates:
            self.classify(candidate)
            if candidate.disposition is Disposition.NEEDS_APPROVAL:
                report.needs_approval += 1
            elif candidate.disposition is Disposition.SKIPPED_DUPLICATE:
                report.skipped += 1
            else:
                report.rejected += 1
            report.candidates.append(candidate)

        logger.info(
            "Rate fetch completed: %d fetched, %d need approval, %d skipped, %d rejected, %d source errors",
            report.total_fetched, report.needs_approval, report.skipped, report.rejected, report.source_errors,
        )
        return report

    def classify(self, candidate: CandidateRate) -> Disposition:
        candidate.validation = validate_candidate(candidate)
        if not candidate.validation.valid:
            candidate.disposition = Disposition.REJECTED_INVALID
            return candidate.disposition

        candidate.duplicate_check = self.check_duplicate(candidate)
        if candidate.duplicate_check.is_duplicate:
            candidate.disposition = Disposition.SKIPPED_DUPLICATE
        else:
            candidate.disposition = Disposition.NEEDS_APPROVAL
        return candidate.disposition

    def check_duplicate(self, candidate: CandidateRate) -> DuplicateCheck:
        existing = self._registry.find_overlap(candidate.kind, candidate.valid_from, candidate.valid_to)
        if existing is None:
            return DuplicateCheck()
        return DuplicateCheck(
            is_duplicate=True,
            matched_id=existing.id,
            reason=f"A {candidate.kind.value} rate already covers this period (id {existing.id})",
        )

    def _note_for(self, candidate: CandidateRate, admin_note: Optional[str]) -> str:
        if admin_note:
            return admin_note
        if candidate.note:
            return candidate.note
        return f"Imported from {candidate.source} on {self._now().date().isoformat()}"

    def _require_valid(self, candidate: CandidateRate) -> None:
        validation = validate_candidate(candidate)
        if not validation.valid:
            raise ValidationError("; ".join(validation.errors))

    def approve(self, candidate: CandidateRate, admin_note: Optional[str] = None) -> InterestRateModel:
        """Write a reviewed candidate to the registry as a new record."""
        self._require_valid(candidate)
        rate = self._registry.create(
            candidate.kind,
            candidate.percentage,
            candidate.valid_from,
            candidate.valid_to,
            reference=candidate.reference,
            note=self._note_for(candidate, admin_note),
        )
        logger.info("Approved %s rate from %s as %s", candidate.kind.value, candidate.source, rate.id)
        return rate

    def overwrite(
        self, candidate: CandidateRate, existing_id: str, admin_note: Optional[str] = None
    ) -> InterestRateModel:
        """Replace the record ``existing_id`` with a reviewed candidate."""
        self._require_valid(candidate)
        rate = self._registry.update(
            existing_id,
            kind=candidate.kind,
            percentage=candidate.percentage,
            valid_from=candidate.valid_from,
            valid_to=candidate.valid_to,
            reference=candidate.reference,
            note=self._note_for(candidate, admin_note),
        )
        logger.info("Overwrote rate %s with %s rate from %s", existing_id, candidate.kind.value, candidate.source)
        return rate
