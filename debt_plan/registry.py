"""Dated registry of legal and moratory interest rates.

Each record is valid from ``valid_from`` to ``valid_to`` (inclusive, open
ended when ``valid_to`` is ``None``). The registry answers two questions for
the rest of the system: which rate applies to a kind on a date, and whether
a new validity window would overlap an existing record of the same kind.

Moratory rates stay in force until superseded: when no moratory record
covers a date, ``resolve`` falls back to the latest one that started on or
before it. Legal rates have no fallback.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from .data_models import RateKind
from .exceptions import RateNotFoundError, RateOverlapError, ValidationError
from .logging import get_logger
from .store import InterestRateModel
from .utils import is_finite, round2

logger = get_logger(__name__)

_UNSET = object()


def periods_overlap(
    new_from: date, new_to: Optional[date], existing_from: date, existing_to: Optional[date]
) -> bool:
    """Return True when ``[new_from, new_to]`` and ``[existing_from, existing_to]`` share a day.

    ``None`` as an end date means the period never ends.
    """
    if existing_to is not None and existing_to < new_from:
        return False
    if new_to is not None and existing_from > new_to:
        return False
    return True


def _validate_fields(kind, percentage, valid_from, valid_to) -> None:
    if not isinstance(kind, RateKind):
        raise ValidationError(f"Unknown rate kind: {kind!r}")
    if percentage is None:
        raise ValidationError("Rate percentage is required")
    if not is_finite(percentage) or percentage < 0 or percentage > 100:
        raise ValidationError("Rate percentage must be between 0 and 100")
    if valid_from is None:
        raise ValidationError("Validity start date is required")
    if valid_to is not None and valid_from > valid_to:
        raise ValidationError("Validity start date cannot be after the end date")


class RateRegistry:
    """Interest rate records backed by the ``interest_rates`` table."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], date] = date.today) -> None:
        self._session_factory = session_factory
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries

    def get(self, rate_id: str) -> InterestRateModel:
        with self._session_factory() as session:
            rate = session.get(InterestRateModel, rate_id)
            if rate is None:
                raise RateNotFoundError(f"Rate {rate_id} not found")
            return rate

    def list_rates(self) -> List[InterestRateModel]:
        with self._session_factory() as session:
            return list(
                session.execute(
                    select(InterestRateModel).order_by(
                        InterestRateModel.kind.asc(), InterestRateModel.valid_from.desc()
                    )
                ).scalars()
            )

    def list_by_kind(self, kind: RateKind) -> List[InterestRateModel]:
        with self._session_factory() as session:
            return list(
                session.execute(
                    select(InterestRateModel)
                    .where(InterestRateModel.kind == kind)
                    .order_by(InterestRateModel.valid_from.desc())
                ).scalars()
            )

    def resolve(self, kind: RateKind, on_date: Optional[date] = None) -> Optional[InterestRateModel]:
        """Return the rate of ``kind`` valid on ``on_date`` (default: today).

        When several records cover the date the most recent ``valid_from``
        wins. Moratory rates fall back to the latest record started on or
        before the date.
        """
        on_date = on_date or self._clock()
        with self._session_factory() as session:
            return self._resolve(session, kind, on_date)

    def _resolve(self, session: Session, kind: RateKind, on_date: date) -> Optional[InterestRateModel]:
        covering = session.execute(
            select(InterestRateModel)
            .where(
                InterestRateModel.kind == kind,
                InterestRateModel.valid_from <= on_date,
                or_(InterestRateModel.valid_to >= on_date, InterestRateModel.valid_to.is_(None)),
            )
            .order_by(InterestRateModel.valid_from.desc())
            .limit(1)
        ).scalar_one_or_none()
        if covering is not None:
            return covering

        if kind is RateKind.MORATORY:
            return session.execute(
                select(InterestRateModel)
                .where(InterestRateModel.kind == kind, InterestRateModel.valid_from <= on_date)
                .order_by(InterestRateModel.valid_from.desc())
                .limit(1)
            ).scalar_one_or_none()
        return None

    def has_valid_rate(self, kind: RateKind, on_date: Optional[date] = None) -> bool:
        return self.resolve(kind, on_date) is not None

    def current_rates(self, on_date: Optional[date] = None) -> List[InterestRateModel]:
        """Return every record whose window covers ``on_date`` (default: today)."""
        on_date = on_date or self._clock()
        with self._session_factory() as session:
            return list(
                session.execute(
                    select(InterestRateModel)
                    .where(
                        InterestRateModel.valid_from <= on_date,
                        or_(InterestRateModel.valid_to >= on_date, InterestRateModel.valid_to.is_(None)),
                    )
                    .order_by(InterestRateModel.kind.asc(), InterestRateModel.valid_from.desc())
                ).scalars()
            )

    def expiring_between(self, start: date, end: date) -> List[InterestRateModel]:
        """Return records whose ``valid_to`` falls within ``[start, end]``."""
        with self._session_factory() as session:
            return list(
                session.execute(
                    select(InterestRateModel)
                    .where(InterestRateModel.valid_to >= start, InterestRateModel.valid_to <= end)
                    .order_by(InterestRateModel.valid_to.asc())
                ).scalars()
            )

    def find_overlap(
        self,
        kind: RateKind,
        new_from: date,
        new_to: Optional[date] = None,
        exclude_id: Optional[str] = None,
    ) -> Optional[InterestRateModel]:
        """Return an existing record of ``kind`` overlapping the candidate window.

        With ``new_to`` set, a record overlaps when it started on or before
        ``new_to`` and has not ended before ``new_from``. An open-ended
        candidate overlaps every record still valid on or after
        ``new_from``.
        """
        with self._session_factory() as session:
            return self._find_overlap(session, kind, new_from, new_to, exclude_id)

    def _find_overlap(
        self,
        session: Session,
        kind: RateKind,
        new_from: date,
        new_to: Optional[date],
        exclude_id: Optional[str],
    ) -> Optional[InterestRateModel]:
        stmt = select(InterestRateModel).where(InterestRateModel.kind == kind)
        if exclude_id is not None:
            stmt = stmt.where(InterestRateModel.id != exclude_id)
        for rate in session.execute(stmt.order_by(InterestRateModel.valid_from.desc())).scalars():
            if periods_overlap(new_from, new_to, rate.valid_from, rate.valid_to):
                return rate
        return None

    # ------------------------------------------------------------------
    # Admin operations

    def create(
        self,
        kind: RateKind,
        percentage: Decimal,
        valid_from: date,
        valid_to: Optional[date] = None,
        reference: Optional[str] = None,
        note: Optional[str] = None,
        *,
        allow_overlap: bool = False,
    ) -> InterestRateModel:
        _validate_fields(kind, percentage, valid_from, valid_to)
        with self._session_factory.begin() as session:
            if not allow_overlap:
                existing = self._find_overlap(session, kind, valid_from, valid_to, None)
                if existing is not None:
                    raise RateOverlapError(kind.value, existing.id)
            rate = InterestRateModel(
                kind=kind,
                percentage=round2(Decimal(percentage)),
                valid_from=valid_from,
                valid_to=valid_to,
                reference=reference,
                note=note,
            )
            session.add(rate)
            session.flush()
        logger.info("Created %s rate %s%% valid %s..%s (id %s)", kind.value, rate.percentage,
                    valid_from, valid_to or "open", rate.id)
        return rate

    def update(
        self,
        rate_id: str,
        *,
        kind=_UNSET,
        percentage=_UNSET,
        valid_from=_UNSET,
        valid_to=_UNSET,
        reference=_UNSET,
        note=_UNSET,
        allow_overlap: bool = False,
    ) -> InterestRateModel:
        """Edit a record in place; only the given fields change.

        Pass ``valid_to=None`` to make the record open ended.
        """
        with self._session_factory.begin() as session:
            rate = session.get(InterestRateModel, rate_id)
            if rate is None:
                raise RateNotFoundError(f"Rate {rate_id} not found")

            new_kind = rate.kind if kind is _UNSET else kind
            new_percentage = rate.percentage if percentage is _UNSET else percentage
            new_from = rate.valid_from if valid_from is _UNSET else valid_from
            new_to = rate.valid_to if valid_to is _UNSET else valid_to
            _validate_fields(new_kind, new_percentage, new_from, new_to)

            if not allow_overlap:
                existing = self._find_overlap(session, new_kind, new_from, new_to, rate.id)
                if existing is not None:
                    raise RateOverlapError(new_kind.value, existing.id)

            rate.kind = new_kind
            rate.percentage = round2(Decimal(new_percentage))
            rate.valid_from = new_from
            rate.valid_to = new_to
            if reference is not _UNSET:
                rate.reference = reference
            if note is not _UNSET:
                rate.note = note
            session.flush()
        logger.info("Updated rate %s", rate_id)
        return rate

    def delete(self, rate_id: str) -> None:
        with self._session_factory.begin() as session:
            rate = session.get(InterestRateModel, rate_id)
            if rate is None:
                raise RateNotFoundError(f"Rate {rate_id} not found")
            session.delete(rate)
        logger.info("Deleted rate %s", rate_id)
