"""Tests for the plan lifecycle service."""

import json
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from debt_plan.config import InterestDefaults
from debt_plan.data_models import (
    AmortizationMethod,
    CloseOutcome,
    FixedInterest,
    InterestKind,
    LegalInterest,
    MoratoryInterest,
    MovementKind,
    PlanState,
)
from debt_plan.exceptions import (
    ActivePlanExistsError,
    AmountAlreadyPostedError,
    InstallmentAlreadyPaidError,
    InstallmentNotPaidError,
    InvalidPlanStateError,
    MissingRateError,
    NothingToRecoverError,
    PlanNotFoundError,
    PostedAmountError,
    ReceiptNotFoundError,
    ValidationError,
)
from debt_plan.lifecycle import PlanService, adjust_moratory_rate
from debt_plan.registry import RateRegistry
from debt_plan.store import Database, HistoryEventModel, InstallmentModel, MovementModel, PlanModel


def _movements(database: Database):
    with database.session_factory() as session:
        return list(session.execute(select(MovementModel).order_by(MovementModel.created_at)).scalars())


def _events(database: Database, event_type: str = None):
    with database.session_factory() as session:
        stmt = select(HistoryEventModel).order_by(HistoryEventModel.created_at)
        if event_type is not None:
            stmt = stmt.where(HistoryEventModel.event_type == event_type)
        return list(session.execute(stmt).scalars())


@pytest.fixture
def skip_active_plan_check(monkeypatch):
    """Let writes reach the database index as if a concurrent transaction won the race."""
    monkeypatch.setattr(PlanService, "_active_plan_of", staticmethod(lambda session, case_id, exclude_id=None: None))


class TestAdjustMoratoryRate:
    defaults = InterestDefaults()

    def test_no_adjustment(self) -> None:
        assert adjust_moratory_rate(Decimal("12.5"), MoratoryInterest(), self.defaults) == Decimal("12.50")

    def test_pre2013_reduction(self) -> None:
        assert adjust_moratory_rate(Decimal("12.5"), MoratoryInterest(pre2013=True), self.defaults) == Decimal("11.50")

    def test_pre2013_never_below_zero(self) -> None:
        assert adjust_moratory_rate(Decimal("0.5"), MoratoryInterest(pre2013=True), self.defaults) == 0

    def test_default_surcharge(self) -> None:
        config = MoratoryInterest(surcharge=True)
        assert adjust_moratory_rate(Decimal("12.5"), config, self.defaults) == Decimal("16.50")

    def test_explicit_surcharge_points(self) -> None:
        config = MoratoryInterest(pre2013=True, surcharge=True, surcharge_points=Decimal("2"))
        assert adjust_moratory_rate(Decimal("12.5"), config, self.defaults) == Decimal("13.50")


class TestCreatePlan:
    def test_plan_without_interest(self, plan_service: PlanService, database: Database) -> None:
        plan = plan_service.create_plan("case-1", Decimal("10000"), 3, date(2024, 4, 1), note="agreed by phone")

        assert plan.plan_state is PlanState.ACTIVE
        assert not plan.applies_interest
        assert plan.resolved_rate is None
        assert plan.total_interest == 0
        assert [i.amount for i in plan.installments] == [Decimal("3333.33"), Decimal("3333.33"), Decimal("3333.34")]
        assert all(not i.paid for i in plan.installments)
        assert _movements(database) == []
        created = _events(database, "plan_created")
        assert len(created) == 1
        assert json.loads(created[0].payload_json)["plan_id"] == plan.id

    def test_legal_plan_posts_accrued_interest(
        self, seeded_registry: RateRegistry, plan_service: PlanService, database: Database
    ) -> None:
        plan = plan_service.create_plan(
            "case-1", Decimal("1200"), 4, date(2024, 4, 15),
            interest=LegalInterest(), interest_start_date=date(2024, 3, 15),
        )

        assert plan.applies_interest
        assert plan.interest_kind is InterestKind.LEGAL
        assert plan.resolved_rate == Decimal("2.50")
        assert plan.interest_start_date == date(2024, 3, 15)
        assert plan.total_interest == sum(i.interest_portion for i in plan.installments)
        movements = _movements(database)
        assert len(movements) == 1
        assert movements[0].kind is MovementKind.INTEREST_ACCRUED
        assert movements[0].amount == plan.total_interest
        assert movements[0].date == date(2024, 4, 15)

    def test_moratory_plan_applies_adjustments(
        self, seeded_registry: RateRegistry, plan_service: PlanService
    ) -> None:
        plan = plan_service.create_plan(
            "case-1", Decimal("1000"), 2, date(2024, 4, 1),
            interest=MoratoryInterest(pre2013=True, surcharge=True),
            method=AmortizationMethod.FRENCH,
        )

        assert plan.resolved_rate == Decimal("15.50")
        assert plan.method is AmortizationMethod.FRENCH
        assert plan.moratory_pre2013 and plan.moratory_surcharge

    def test_fixed_plan(self, plan_service: PlanService) -> None:
        plan = plan_service.create_plan(
            "case-1", Decimal("1000"), 2, date(2024, 4, 1), interest=FixedInterest(rate=Decimal("4"))
        )

        assert plan.interest_kind is InterestKind.FIXED
        assert plan.resolved_rate == Decimal("4")

    def test_missing_rate(self, plan_service: PlanService, database: Database) -> None:
        with pytest.raises(MissingRateError) as exc_info:
            plan_service.create_plan("case-1", Decimal("1000"), 2, date(2024, 4, 1), interest=LegalInterest())

        assert exc_info.value.kind == "legal"
        assert plan_service.list_plans_by_case("case-1") == []

    @pytest.mark.parametrize("rate", [None, Decimal("-1"), Decimal("150")])
    def test_invalid_fixed_rate(self, plan_service: PlanService, rate) -> None:
        with pytest.raises(ValidationError):
            plan_service.create_plan("case-1", Decimal("1000"), 2, date(2024, 4, 1), interest=FixedInterest(rate=rate))

    @pytest.mark.parametrize("principal, count", [(Decimal("0"), 2), (Decimal("100"), 0)])
    def test_invalid_amounts(self, plan_service: PlanService, principal, count) -> None:
        with pytest.raises(ValidationError):
            plan_service.create_plan("case-1", principal, count, date(2024, 4, 1))

    @pytest.mark.parametrize("principal", [Decimal("NaN"), Decimal("sNaN"), Decimal("Infinity")])
    def test_non_finite_principal(self, plan_service: PlanService, principal) -> None:
        with pytest.raises(ValidationError):
            plan_service.create_plan("case-1", principal, 2, date(2024, 4, 1))
        assert plan_service.list_plans_by_case("case-1") == []

    @pytest.mark.parametrize(
        "interest",
        [
            FixedInterest(rate=Decimal("NaN")),
            FixedInterest(rate=Decimal("Infinity")),
            MoratoryInterest(surcharge=True, surcharge_points=Decimal("Infinity")),
        ],
    )
    def test_non_finite_rates(self, seeded_registry: RateRegistry, plan_service: PlanService, interest) -> None:
        with pytest.raises(ValidationError):
            plan_service.create_plan("case-1", Decimal("1000"), 2, date(2024, 4, 1), interest=interest)

    def test_second_active_plan_rejected(self, plan_service: PlanService) -> None:
        plan_service.create_plan("case-1", Decimal("1000"), 2, date(2024, 4, 1))

        with pytest.raises(ActivePlanExistsError):
            plan_service.create_plan("case-1", Decimal("500"), 2, date(2024, 4, 1))
        assert len(plan_service.list_plans_by_case("case-1")) == 1

    def test_active_plan_index_backs_the_check(
        self, plan_service: PlanService, database: Database, skip_active_plan_check
    ) -> None:
        plan_service.create_plan("case-1", Decimal("1000"), 2, date(2024, 4, 1))

        with pytest.raises(ActivePlanExistsError):
            plan_service.create_plan("case-1", Decimal("500"), 2, date(2024, 4, 1))

        assert len(plan_service.list_plans_by_case("case-1")) == 1
        assert len(_events(database, "plan_created")) == 1

    def test_other_case_unaffected(self, plan_service: PlanService) -> None:
        plan_service.create_plan("case-1", Decimal("1000"), 2, date(2024, 4, 1))
        plan_service.create_plan("case-2", Decimal("1000"), 2, date(2024, 4, 1))

        assert plan_service.get_plan_by_case("case-2").case_id == "case-2"


@pytest.fixture
def interest_plan(seeded_registry: RateRegistry, plan_service: PlanService) -> PlanModel:
    return plan_service.create_plan(
        "case-1", Decimal("1200"), 3, date(2024, 4, 15),
        interest=LegalInterest(), interest_start_date=date(2024, 3, 15),
    )


class TestPayments:
    def test_pay_posts_principal_and_interest(
        self, interest_plan: PlanModel, plan_service: PlanService, database: Database
    ) -> None:
        first = interest_plan.installments[0]

        paid = plan_service.pay_installment(
            first.id, payment_date=date(2024, 4, 16), payment_method="transfer",
            payment_reference="TRX-1", receipt_location="receipts/1.pdf",
        )

        assert paid.paid
        assert paid.payment_date == date(2024, 4, 16)
        kinds = {m.id: m.kind for m in _movements(database)}
        assert kinds[paid.principal_movement_id] is MovementKind.PRINCIPAL_RECOVERY
        assert kinds[paid.interest_movement_id] is MovementKind.INTEREST_RECOVERY
        assert len(_events(database, "movement_inserted")) == 2
        assert len(_events(database, "plan_payment")) == 1

    def test_payment_defaults_to_today(self, plan_service: PlanService, today: date) -> None:
        plan = plan_service.create_plan("case-1", Decimal("100"), 2, date(2024, 4, 1))

        paid = plan_service.pay_installment(plan.installments[0].id)

        assert paid.payment_date == today
        assert paid.interest_movement_id is None

    def test_pay_twice(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        inst_id = interest_plan.installments[0].id
        plan_service.pay_installment(inst_id)

        with pytest.raises(InstallmentAlreadyPaidError):
            plan_service.pay_installment(inst_id)

    def test_reverse_then_pay_again(
        self, interest_plan: PlanModel, plan_service: PlanService, database: Database
    ) -> None:
        inst_id = interest_plan.installments[1].id
        first_payment = plan_service.pay_installment(inst_id, payment_date=date(2024, 5, 15))

        reversed_inst = plan_service.reverse_installment(inst_id)

        assert not reversed_inst.paid
        assert reversed_inst.payment_date is None
        assert reversed_inst.principal_movement_id is None
        # only the accrued interest movement remains
        assert [m.kind for m in _movements(database)] == [MovementKind.INTEREST_ACCRUED]
        assert len(_events(database, "movement_deleted")) == 2
        assert len(_events(database, "plan_reversal")) == 1

        second_payment = plan_service.pay_installment(inst_id, payment_date=date(2024, 5, 20))
        assert second_payment.principal_portion == first_payment.principal_portion
        assert second_payment.interest_portion == first_payment.interest_portion
        assert second_payment.principal_movement_id != first_payment.principal_movement_id

    def test_reverse_unpaid(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        with pytest.raises(InstallmentNotPaidError):
            plan_service.reverse_installment(interest_plan.installments[0].id)

    def test_update_installment_metadata(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        inst_id = interest_plan.installments[0].id
        plan_service.pay_installment(inst_id, payment_date=date(2024, 4, 16))

        updated = plan_service.update_installment(
            inst_id, payment_date=date(2024, 4, 17), payment_reference="TRX-9", note="late receipt"
        )

        assert updated.payment_date == date(2024, 4, 17)
        assert updated.payment_reference == "TRX-9"
        assert updated.note == "late receipt"
        assert updated.paid

    def test_update_payment_date_of_unpaid(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        with pytest.raises(ValidationError):
            plan_service.update_installment(interest_plan.installments[0].id, payment_date=date(2024, 4, 17))

    def test_receipt_location(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        inst_id = interest_plan.installments[0].id
        with pytest.raises(ReceiptNotFoundError):
            plan_service.receipt_location(inst_id)

        plan_service.pay_installment(inst_id, receipt_location="receipts/1.pdf")

        assert plan_service.receipt_location(inst_id) == "receipts/1.pdf"

    def test_payments_need_an_active_plan(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        plan_service.close_plan(interest_plan.id, CloseOutcome.NEGATIVE)

        with pytest.raises(InvalidPlanStateError):
            plan_service.pay_installment(interest_plan.installments[0].id)


class TestCloseReopen:
    def test_close_posts_recovered_amount(
        self, interest_plan: PlanModel, plan_service: PlanService, database: Database, today: date
    ) -> None:
        first = interest_plan.installments[0]
        plan_service.pay_installment(first.id)

        closed = plan_service.close_plan(interest_plan.id, CloseOutcome.NEGATIVE, note="debtor stopped paying")

        assert closed.plan_state is PlanState.CLOSED_NEGATIVE
        assert closed.close_date == today
        assert closed.recovered_amount == first.amount
        assert closed.amount_posted
        recovery = [m for m in _movements(database) if m.id == closed.recovery_movement_id]
        assert recovery[0].amount == first.amount
        assert closed.note == "debtor stopped paying"
        assert len(_events(database, "plan_closed")) == 1

    def test_close_without_payments(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        closed = plan_service.close_plan(interest_plan.id, CloseOutcome.POSITIVE)

        assert closed.plan_state is PlanState.CLOSED_POSITIVE
        assert closed.recovered_amount == 0
        assert not closed.amount_posted
        assert closed.recovery_movement_id is None

    def test_close_twice(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        plan_service.close_plan(interest_plan.id, CloseOutcome.POSITIVE)

        with pytest.raises(InvalidPlanStateError):
            plan_service.close_plan(interest_plan.id, CloseOutcome.POSITIVE)

    def test_close_then_new_plan_allowed(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        plan_service.close_plan(interest_plan.id, CloseOutcome.NEGATIVE)

        new_plan = plan_service.create_plan("case-1", Decimal("300"), 1, date(2024, 5, 1))

        assert new_plan.plan_state is PlanState.ACTIVE
        assert len(plan_service.list_plans_by_case("case-1")) == 2

    def test_reopen_removes_recovery_movement(
        self, interest_plan: PlanModel, plan_service: PlanService, database: Database
    ) -> None:
        plan_service.pay_installment(interest_plan.installments[0].id)
        closed = plan_service.close_plan(interest_plan.id, CloseOutcome.POSITIVE)

        reopened = plan_service.reopen_plan(interest_plan.id)

        assert reopened.plan_state is PlanState.ACTIVE
        assert reopened.close_date is None
        assert reopened.recovered_amount is None
        assert not reopened.amount_posted
        assert closed.recovery_movement_id not in {m.id for m in _movements(database)}
        assert len(_events(database, "plan_reopened")) == 1

    def test_reopen_active_plan(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        with pytest.raises(InvalidPlanStateError):
            plan_service.reopen_plan(interest_plan.id)

    def test_reopen_blocked_by_other_active_plan(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        plan_service.close_plan(interest_plan.id, CloseOutcome.NEGATIVE)
        plan_service.create_plan("case-1", Decimal("300"), 1, date(2024, 5, 1))

        with pytest.raises(ActivePlanExistsError):
            plan_service.reopen_plan(interest_plan.id)
        assert plan_service.get_plan(interest_plan.id).plan_state is PlanState.CLOSED_NEGATIVE

    def test_reopen_rejected_by_active_plan_index(
        self, interest_plan: PlanModel, plan_service: PlanService, skip_active_plan_check
    ) -> None:
        plan_service.close_plan(interest_plan.id, CloseOutcome.NEGATIVE)
        plan_service.create_plan("case-1", Decimal("300"), 1, date(2024, 5, 1))

        with pytest.raises(ActivePlanExistsError):
            plan_service.reopen_plan(interest_plan.id)
        assert plan_service.get_plan(interest_plan.id).plan_state is PlanState.CLOSED_NEGATIVE


class TestInjectAndDelete:
    def _close_with_unposted_recovery(self, plan: PlanModel, plan_service: PlanService, database: Database):
        plan_service.pay_installment(plan.installments[0].id)
        closed = plan_service.close_plan(plan.id, CloseOutcome.NEGATIVE)
        # simulate a recovery whose movement was never booked
        with database.session_factory.begin() as session:
            stored = session.get(PlanModel, plan.id)
            stored.amount_posted = False
            stored.recovery_movement_id = None
            session.delete(session.get(MovementModel, closed.recovery_movement_id))
        return closed

    def test_inject_posts_movement(
        self, interest_plan: PlanModel, plan_service: PlanService, database: Database
    ) -> None:
        closed = self._close_with_unposted_recovery(interest_plan, plan_service, database)

        injected = plan_service.inject_recovered_amount(interest_plan.id, note="booked manually")

        assert injected.amount_posted
        movement = [m for m in _movements(database) if m.id == injected.recovery_movement_id][0]
        assert movement.amount == closed.recovered_amount
        assert "partial" in movement.memo

    def test_inject_twice(self, interest_plan: PlanModel, plan_service: PlanService, database: Database) -> None:
        self._close_with_unposted_recovery(interest_plan, plan_service, database)
        plan_service.inject_recovered_amount(interest_plan.id)

        with pytest.raises(AmountAlreadyPostedError):
            plan_service.inject_recovered_amount(interest_plan.id)

    def test_inject_on_active_plan(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        with pytest.raises(InvalidPlanStateError):
            plan_service.inject_recovered_amount(interest_plan.id)

    def test_inject_nothing_recovered(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        plan_service.close_plan(interest_plan.id, CloseOutcome.NEGATIVE)

        with pytest.raises(NothingToRecoverError):
            plan_service.inject_recovered_amount(interest_plan.id)

    def test_delete_plan(self, interest_plan: PlanModel, plan_service: PlanService, database: Database) -> None:
        plan_service.delete_plan(interest_plan.id)

        with pytest.raises(PlanNotFoundError):
            plan_service.get_plan(interest_plan.id)
        with database.session_factory() as session:
            assert session.execute(select(InstallmentModel)).first() is None

    def test_delete_posted_plan_refused(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        plan_service.pay_installment(interest_plan.installments[0].id)
        plan_service.close_plan(interest_plan.id, CloseOutcome.POSITIVE)

        with pytest.raises(PostedAmountError):
            plan_service.delete_plan(interest_plan.id)


class TestStatistics:
    def test_statistics(self, interest_plan: PlanModel, plan_service: PlanService) -> None:
        first = interest_plan.installments[0]
        plan_service.pay_installment(first.id)

        stats = plan_service.get_statistics(interest_plan.id)

        assert stats.installment_count == 3
        assert stats.paid_installments == 1
        assert stats.open_installments == 2
        assert stats.percent_paid == Decimal("33.33")
        assert stats.paid_amount == first.amount
        assert stats.paid_principal == first.principal_portion
        assert stats.outstanding_principal == Decimal("1200") - first.principal_portion
        assert stats.state is PlanState.ACTIVE
        assert stats.recovered_amount is None
