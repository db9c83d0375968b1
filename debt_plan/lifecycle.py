"""Plan lifecycle: creation, installment payments, closing and reopening.

``PlanService`` owns the plan aggregate (schedule, state and the ledger
movements derived from it). Each public operation runs in one database
transaction together with the ledger movements and case-history events it
produces, so a failed precondition or a database error leaves nothing
behind.

State transitions::

    (none) --create_plan--> active
    active --pay/reverse/update installment--> active
    active --close_plan--> closed_positive | closed_negative
    closed_* --reopen_plan--> active
    closed_* --inject_recovered_amount--> closed_*

``suspended`` is a reserved state: no operation enters or leaves it.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .collaborators import CaseHistory, Ledger, SqlCaseHistory, SqlLedger
from .config import InterestDefaults
from .data_models import (
    AmortizationMethod,
    CloseOutcome,
    FixedInterest,
    HistoryEvent,
    InterestConfig,
    InterestTerms,
    LegalInterest,
    MoratoryInterest,
    MovementKind,
    NoInterest,
    PlanState,
    PlanStatistics,
    RateKind,
    interest_kind_of,
)
from .engine import compute_schedule
from .exceptions import (
    ActivePlanExistsError,
    AmountAlreadyPostedError,
    InstallmentAlreadyPaidError,
    InstallmentNotFoundError,
    InstallmentNotPaidError,
    InvalidPlanStateError,
    MissingRateError,
    NothingToRecoverError,
    PlanNotFoundError,
    PostedAmountError,
    ReceiptNotFoundError,
    ValidationError,
)
from .logging import get_logger
from .registry import RateRegistry
from .store import InstallmentModel, PlanModel
from .utils import is_finite, round2

logger = get_logger(__name__)

_ZERO = Decimal("0")
_UNSET = object()


def adjust_moratory_rate(rate: Decimal, config: MoratoryInterest, defaults: InterestDefaults) -> Decimal:
    """Apply the pre-2013 reduction and the surcharge to a moratory rate.

    The reduction never takes the rate below zero; the surcharge is the
    caller's value or, when missing, the configured default.
    """
    adjusted = rate
    if config.pre2013:
        adjusted = max(adjusted - defaults.pre2013_reduction_points, _ZERO)
    if config.surcharge:
        points = config.surcharge_points
        if points is None:
            points = defaults.moratory_surcharge_points
        if not is_finite(points):
            raise ValidationError(f"Invalid surcharge points: {points}")
        adjusted += points
    return round2(adjusted)


def resolve_effective_rate(
    registry: RateRegistry,
    interest: InterestConfig,
    on_date: date,
    defaults: InterestDefaults,
) -> Optional[Decimal]:
    """Return the annual rate a plan with ``interest`` bears, or ``None``.

    Raises
    ------
    MissingRateError
        If the registry has no rate of the needed kind for ``on_date``.
    ValidationError
        If a fixed rate is missing or out of range.
    """
    if isinstance(interest, NoInterest):
        return None
    if isinstance(interest, LegalInterest):
        rate = registry.resolve(RateKind.LEGAL, on_date)
        if rate is None:
            raise MissingRateError(RateKind.LEGAL.value, on_date)
        return Decimal(rate.percentage)
    if isinstance(interest, MoratoryInterest):
        rate = registry.resolve(RateKind.MORATORY, on_date)
        if rate is None:
            raise MissingRateError(RateKind.MORATORY.value, on_date)
        return adjust_moratory_rate(Decimal(rate.percentage), interest, defaults)
    if isinstance(interest, FixedInterest):
        if interest.rate is None:
            raise ValidationError("A fixed interest rate is required")
        if not is_finite(interest.rate) or interest.rate < 0 or interest.rate > 100:
            raise ValidationError("Fixed interest rate must be between 0 and 100")
        return Decimal(interest.rate)
    raise ValidationError(f"Unknown interest configuration: {interest!r}")


class PlanService:
    """Lifecycle operations on repayment plans.

    Parameters
    ----------
    session_factory: sessionmaker
        Factory of the database holding plans and installments.
    registry: RateRegistry
        Source of legal and moratory rates.
    interest_defaults: Optional[InterestDefaults]
        Statutory adjustments for moratory plans.
    ledger_factory, history_factory: Callable[[Session], ...]
        Build the ledger and case-history collaborators for the session of
        the running operation.
    clock: Callable[[], date]
        Returns today's date.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: RateRegistry,
        interest_defaults: Optional[InterestDefaults] = None,
        ledger_factory: Callable[[Session], Ledger] = SqlLedger,
        history_factory: Callable[[Session], CaseHistory] = SqlCaseHistory,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._defaults = interest_defaults or InterestDefaults()
        self._ledger_factory = ledger_factory
        self._history_factory = history_factory
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers

    @staticmethod
    def _load_plan(session: Session, plan_id: str) -> PlanModel:
        plan = session.get(PlanModel, plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found")
        return plan

    @staticmethod
    def _load_installment(session: Session, installment_id: str) -> InstallmentModel:
        installment = session.get(InstallmentModel, installment_id)
        if installment is None:
            raise InstallmentNotFoundError(f"Installment {installment_id} not found")
        return installment

    @staticmethod
    def _require_active(plan: PlanModel) -> None:
        if plan.plan_state is not PlanState.ACTIVE:
            raise InvalidPlanStateError(f"Plan {plan.id} is not active (state: {plan.state})")

    @staticmethod
    def _active_plan_of(session: Session, case_id: str, exclude_id: Optional[str] = None) -> Optional[PlanModel]:
        stmt = select(PlanModel).where(
            PlanModel.case_id == case_id, PlanModel.state == PlanState.ACTIVE.value
        )
        if exclude_id is not None:
            stmt = stmt.where(PlanModel.id != exclude_id)
        return session.execute(stmt.limit(1)).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Creation

    def create_plan(
        self,
        case_id: str,
        principal: Decimal,
        installment_count: int,
        start_date: date,
        interest: InterestConfig = NoInterest(),
        method: AmortizationMethod = AmortizationMethod.ITALIAN,
        interest_start_date: Optional[date] = None,
        note: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> PlanModel:
        """Create an active plan with its schedule.

        The rate of an interest-bearing plan is resolved on the interest
        start date (the plan start date when missing). When the schedule
        accrues interest, one ``interest_accrued`` movement for the total
        is posted to the ledger.
        """
        if not case_id:
            raise ValidationError("Case id is required")
        if principal is None or not is_finite(principal) or principal <= 0:
            raise ValidationError("Principal must be positive")
        principal = round2(Decimal(principal))

        reference_date = interest_start_date or start_date
        # Resolved outside the write transaction; the registry opens its own session.
        rate = resolve_effective_rate(self._registry, interest, reference_date, self._defaults)
        terms = None
        if rate is not None:
            terms = InterestTerms(annual_rate=rate, interest_start_date=reference_date, method=method)
        schedule = compute_schedule(principal, installment_count, start_date, terms)
        total_interest = sum((entry.interest_portion for entry in schedule), _ZERO)

        try:
            with self._session_factory.begin() as session:
                if self._active_plan_of(session, case_id) is not None:
                    raise ActivePlanExistsError(case_id)

                plan = PlanModel(
                    case_id=case_id,
                    principal=principal,
                    installment_count=installment_count,
                    start_date=start_date,
                    state=PlanState.ACTIVE.value,
                    amount_posted=False,
                    note=note,
                    applies_interest=rate is not None,
                    interest_kind=interest_kind_of(interest),
                    resolved_rate=rate,
                    method=method,
                    interest_start_date=reference_date if rate is not None else None,
                    moratory_pre2013=isinstance(interest, MoratoryInterest) and interest.pre2013,
                    moratory_surcharge=isinstance(interest, MoratoryInterest) and interest.surcharge,
                    moratory_surcharge_points=(
                        interest.surcharge_points if isinstance(interest, MoratoryInterest) else None
                    ),
                    total_interest=total_interest,
                )
                plan.installments = [
                    InstallmentModel(
                        sequence_number=entry.sequence_number,
                        amount=entry.amount,
                        principal_portion=entry.principal_portion,
                        interest_portion=entry.interest_portion,
                        due_date=entry.due_date,
                        paid=False,
                    )
                    for entry in schedule
                ]
                session.add(plan)
                session.flush()

                accrued_movement_id = None
                if total_interest > 0:
                    ledger = self._ledger_factory(session)
                    accrued_movement_id = ledger.post_movement(
                        case_id,
                        MovementKind.INTEREST_ACCRUED,
                        total_interest,
                        start_date,
                        f"Interest accrued on repayment plan ({plan.interest_kind.value}, {rate}%)",
                    )

                self._history_factory(session).append_event(
                    case_id,
                    HistoryEvent.PLAN_CREATED.value,
                    {
                        "plan_id": plan.id,
                        "principal": principal,
                        "installment_count": installment_count,
                        "start_date": start_date,
                        "interest_kind": plan.interest_kind.value if plan.interest_kind else None,
                        "resolved_rate": rate,
                        "method": method.value,
                        "total_interest": total_interest,
                        "interest_movement_id": accrued_movement_id,
                    },
                    actor,
                )
        except IntegrityError as exc:
            # Another transaction activated a plan for the case first.
            raise ActivePlanExistsError(case_id) from exc

        logger.info(
            "Created plan %s for case %s: %s in %d installments, interest %s",
            plan.id, case_id, principal, installment_count, total_interest,
        )
        return plan

    # ------------------------------------------------------------------
    # Installments

    def pay_installment(
        self,
        installment_id: str,
        payment_date: Optional[date] = None,
        payment_method: Optional[str] = None,
        payment_reference: Optional[str] = None,
        note: Optional[str] = None,
        receipt_location: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> InstallmentModel:
        """Mark an installment paid and post its recovery movements."""
        with self._session_factory.begin() as session:
            installment = self._load_installment(session, installment_id)
            plan = installment.plan
            self._require_active(plan)
            if installment.paid:
                raise InstallmentAlreadyPaidError(f"Installment {installment.sequence_number} is already paid")

            paid_on = payment_date or self._clock()
            ledger = self._ledger_factory(session)
            history = self._history_factory(session)

            memo = f"Installment {installment.sequence_number}/{plan.installment_count} of repayment plan"
            principal_id = ledger.post_movement(
                plan.case_id, MovementKind.PRINCIPAL_RECOVERY, installment.principal_portion, paid_on, memo
            )
            history.append_event(
                plan.case_id,
                HistoryEvent.MOVEMENT_INSERTED.value,
                {
                    "movement_id": principal_id,
                    "kind": MovementKind.PRINCIPAL_RECOVERY.value,
                    "amount": installment.principal_portion,
                    "date": paid_on,
                },
                actor,
            )

            interest_id = None
            if installment.interest_portion > 0:
                interest_id = ledger.post_movement(
                    plan.case_id, MovementKind.INTEREST_RECOVERY, installment.interest_portion, paid_on, memo
                )
                history.append_event(
                    plan.case_id,
                    HistoryEvent.MOVEMENT_INSERTED.value,
                    {
                        "movement_id": interest_id,
                        "kind": MovementKind.INTEREST_RECOVERY.value,
                        "amount": installment.interest_portion,
                        "date": paid_on,
                    },
                    actor,
                )

            installment.paid = True
            installment.payment_date = paid_on
            installment.payment_method = payment_method
            installment.payment_reference = payment_reference
            installment.receipt_location = receipt_location
            installment.principal_movement_id = principal_id
            installment.interest_movement_id = interest_id
            if note is not None:
                installment.note = note

            history.append_event(
                plan.case_id,
                HistoryEvent.PLAN_PAYMENT.value,
                {
                    "plan_id": plan.id,
                    "installment_id": installment.id,
                    "sequence_number": installment.sequence_number,
                    "amount": installment.amount,
                    "payment_date": paid_on,
                    "payment_method": payment_method,
                },
                actor,
            )

        logger.info("Paid installment %s of plan %s on %s", installment.sequence_number, plan.id, paid_on)
        return installment

    def reverse_installment(self, installment_id: str, actor: Optional[str] = None) -> InstallmentModel:
        """Undo a payment: delete its movements and clear the payment data."""
        with self._session_factory.begin() as session:
            installment = self._load_installment(session, installment_id)
            plan = installment.plan
            self._require_active(plan)
            if not installment.paid:
                raise InstallmentNotPaidError(f"Installment {installment.sequence_number} is not paid")

            ledger = self._ledger_factory(session)
            history = self._history_factory(session)
            for movement_id in (installment.principal_movement_id, installment.interest_movement_id):
                if movement_id is None:
                    continue
                history.append_event(
                    plan.case_id,
                    HistoryEvent.MOVEMENT_DELETED.value,
                    {"movement_id": movement_id, "installment_id": installment.id},
                    actor,
                )
                ledger.delete_movement(movement_id)

            installment.paid = False
            installment.payment_date = None
            installment.payment_method = None
            installment.payment_reference = None
            installment.receipt_location = None
            installment.principal_movement_id = None
            installment.interest_movement_id = None

            history.append_event(
                plan.case_id,
                HistoryEvent.PLAN_REVERSAL.value,
                {
                    "plan_id": plan.id,
                    "installment_id": installment.id,
                    "sequence_number": installment.sequence_number,
                },
                actor,
            )

        logger.info("Reversed installment %s of plan %s", installment.sequence_number, plan.id)
        return installment

    def update_installment(
        self,
        installment_id: str,
        *,
        payment_method=_UNSET,
        payment_reference=_UNSET,
        payment_date=_UNSET,
        receipt_location=_UNSET,
        note=_UNSET,
    ) -> InstallmentModel:
        """Edit the payment metadata of an installment.

        The paid flag and the linked movements are never touched here; use
        ``pay_installment`` and ``reverse_installment`` for that.
        """
        with self._session_factory.begin() as session:
            installment = self._load_installment(session, installment_id)
            self._require_active(installment.plan)

            if payment_date is not _UNSET:
                if not installment.paid:
                    raise ValidationError("Only a paid installment has a payment date")
                if payment_date is None:
                    raise ValidationError("A paid installment needs a payment date")
                installment.payment_date = payment_date
            if payment_method is not _UNSET:
                installment.payment_method = payment_method
            if payment_reference is not _UNSET:
                installment.payment_reference = payment_reference
            if receipt_location is not _UNSET:
                installment.receipt_location = receipt_location
            if note is not _UNSET:
                installment.note = note
        return installment

    # ------------------------------------------------------------------
    # Closing

    def close_plan(
        self,
        plan_id: str,
        outcome: CloseOutcome,
        note: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> PlanModel:
        """Close an active plan and post the recovered amount, if any."""
        with self._session_factory.begin() as session:
            plan = self._load_plan(session, plan_id)
            self._require_active(plan)

            today = self._clock()
            recovered = round2(sum((i.amount for i in plan.installments if i.paid), _ZERO))
            plan.state = (
                PlanState.CLOSED_POSITIVE.value
                if outcome is CloseOutcome.POSITIVE
                else PlanState.CLOSED_NEGATIVE.value
            )
            plan.close_date = today
            plan.recovered_amount = recovered
            if note:
                plan.note = f"{plan.note}\n\nClosing: {note}" if plan.note else note

            history = self._history_factory(session)
            if recovered > 0:
                memo = "Recovery from repayment plan" + (f" - {note}" if note else "")
                movement_id = self._ledger_factory(session).post_movement(
                    plan.case_id, MovementKind.PRINCIPAL_RECOVERY, recovered, today, memo
                )
                plan.recovery_movement_id = movement_id
                plan.amount_posted = True
                history.append_event(
                    plan.case_id,
                    HistoryEvent.MOVEMENT_INSERTED.value,
                    {
                        "movement_id": movement_id,
                        "kind": MovementKind.PRINCIPAL_RECOVERY.value,
                        "amount": recovered,
                        "date": today,
                    },
                    actor,
                )
            else:
                plan.recovery_movement_id = None
                plan.amount_posted = False

            history.append_event(
                plan.case_id,
                HistoryEvent.PLAN_CLOSED.value,
                {
                    "plan_id": plan.id,
                    "outcome": outcome.value,
                    "close_date": today,
                    "recovered_amount": recovered,
                    "amount_posted": plan.amount_posted,
                },
                actor,
            )

        logger.info("Closed plan %s as %s, recovered %s", plan.id, plan.state, recovered)
        return plan

    def reopen_plan(self, plan_id: str, actor: Optional[str] = None) -> PlanModel:
        """Bring a closed plan back to active, removing its recovery movement."""
        case_id = None
        try:
            with self._session_factory.begin() as session:
                plan = self._load_plan(session, plan_id)
                case_id = plan.case_id
                if plan.plan_state not in (PlanState.CLOSED_POSITIVE, PlanState.CLOSED_NEGATIVE):
                    raise InvalidPlanStateError(f"Plan {plan.id} is not closed (state: {plan.state})")
                if self._active_plan_of(session, plan.case_id, exclude_id=plan.id) is not None:
                    raise ActivePlanExistsError(plan.case_id)

                history = self._history_factory(session)
                removed_movement_id = plan.recovery_movement_id
                if removed_movement_id is not None:
                    history.append_event(
                        plan.case_id,
                        HistoryEvent.MOVEMENT_DELETED.value,
                        {"movement_id": removed_movement_id, "plan_id": plan.id},
                        actor,
                    )
                    self._ledger_factory(session).delete_movement(removed_movement_id)

                plan.state = PlanState.ACTIVE.value
                plan.close_date = None
                plan.recovered_amount = None
                plan.amount_posted = False
                plan.recovery_movement_id = None

                history.append_event(
                    plan.case_id,
                    HistoryEvent.PLAN_REOPENED.value,
                    {"plan_id": plan.id, "removed_movement_id": removed_movement_id},
                    actor,
                )
                session.flush()
        except IntegrityError as exc:
            raise ActivePlanExistsError(case_id) from exc

        logger.info("Reopened plan %s", plan.id)
        return plan

    def inject_recovered_amount(
        self, plan_id: str, note: Optional[str] = None, actor: Optional[str] = None
    ) -> PlanModel:
        """Post the recovered amount of a closed plan that has not been posted yet."""
        with self._session_factory.begin() as session:
            plan = self._load_plan(session, plan_id)
            if plan.plan_state is PlanState.ACTIVE:
                raise InvalidPlanStateError("Close the plan before posting the recovered amount")
            if plan.amount_posted:
                raise AmountAlreadyPostedError(f"The recovered amount of plan {plan.id} is already posted")
            if not plan.recovered_amount or plan.recovered_amount <= 0:
                raise NothingToRecoverError(f"Plan {plan.id} has no recovered amount to post")

            today = self._clock()
            completeness = "complete" if plan.plan_state is PlanState.CLOSED_POSITIVE else "partial"
            memo = f"Recovery from repayment plan ({completeness})" + (f". {note}" if note else "")
            movement_id = self._ledger_factory(session).post_movement(
                plan.case_id, MovementKind.PRINCIPAL_RECOVERY, plan.recovered_amount, today, memo
            )
            plan.amount_posted = True
            plan.recovery_movement_id = movement_id

            self._history_factory(session).append_event(
                plan.case_id,
                HistoryEvent.MOVEMENT_INSERTED.value,
                {
                    "movement_id": movement_id,
                    "kind": MovementKind.PRINCIPAL_RECOVERY.value,
                    "amount": plan.recovered_amount,
                    "date": today,
                },
                actor,
            )

        logger.info("Posted recovered amount %s of plan %s", plan.recovered_amount, plan.id)
        return plan

    def delete_plan(self, plan_id: str) -> None:
        """Delete a plan and its installments unless its recovered amount is posted."""
        with self._session_factory.begin() as session:
            plan = self._load_plan(session, plan_id)
            if plan.amount_posted:
                raise PostedAmountError(
                    f"Plan {plan.id} has a recovered amount posted to the ledger and cannot be deleted"
                )
            session.delete(plan)
        logger.info("Deleted plan %s", plan_id)

    # ------------------------------------------------------------------
    # Queries

    def get_plan(self, plan_id: str) -> PlanModel:
        with self._session_factory() as session:
            return self._load_plan(session, plan_id)

    def get_plan_by_case(self, case_id: str) -> Optional[PlanModel]:
        """Return the most recent plan of a case, or ``None``."""
        with self._session_factory() as session:
            return session.execute(
                select(PlanModel)
                .where(PlanModel.case_id == case_id)
                .order_by(PlanModel.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def list_plans_by_case(self, case_id: str) -> List[PlanModel]:
        with self._session_factory() as session:
            return list(
                session.execute(
                    select(PlanModel).where(PlanModel.case_id == case_id).order_by(PlanModel.created_at.desc())
                ).scalars()
            )

    def get_installment(self, installment_id: str) -> InstallmentModel:
        with self._session_factory() as session:
            return self._load_installment(session, installment_id)

    def receipt_location(self, installment_id: str) -> str:
        installment = self.get_installment(installment_id)
        if not installment.receipt_location:
            raise ReceiptNotFoundError(f"Installment {installment_id} has no receipt")
        return installment.receipt_location

    def get_statistics(self, plan_id: str) -> PlanStatistics:
        plan = self.get_plan(plan_id)
        paid = [i for i in plan.installments if i.paid]
        paid_amount = sum((i.amount for i in paid), _ZERO)
        paid_principal = sum((i.principal_portion for i in paid), _ZERO)
        paid_interest = sum((i.interest_portion for i in paid), _ZERO)
        count = plan.installment_count
        percent = round2(Decimal(len(paid)) * 100 / Decimal(count)) if count else _ZERO
        return PlanStatistics(
            principal=Decimal(plan.principal),
            paid_amount=round2(paid_amount),
            paid_principal=round2(paid_principal),
            paid_interest=round2(paid_interest),
            outstanding_principal=round2(Decimal(plan.principal) - paid_principal),
            total_interest=Decimal(plan.total_interest),
            installment_count=count,
            paid_installments=len(paid),
            open_installments=len(plan.installments) - len(paid),
            percent_paid=percent,
            state=plan.plan_state,
            recovered_amount=plan.recovered_amount,
            amount_posted=plan.amount_posted,
            close_date=plan.close_date,
        )

