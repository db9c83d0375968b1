"""Tests for the dated interest rate registry."""

from datetime import date
from decimal import Decimal

import pytest

from debt_plan.data_models import RateKind
from debt_plan.exceptions import RateNotFoundError, RateOverlapError, ValidationError
from debt_plan.registry import RateRegistry, periods_overlap


class TestPeriodsOverlap:
    """Inclusive windows, ``None`` meaning open ended."""

    def test_disjoint(self) -> None:
        assert not periods_overlap(date(2024, 7, 1), date(2024, 12, 31), date(2024, 1, 1), date(2024, 6, 30))

    def test_shared_boundary_day(self) -> None:
        assert periods_overlap(date(2024, 6, 30), date(2024, 12, 31), date(2024, 1, 1), date(2024, 6, 30))

    def test_open_ended_existing(self) -> None:
        assert periods_overlap(date(2030, 1, 1), None, date(2024, 1, 1), None)

    def test_new_window_before_existing(self) -> None:
        assert not periods_overlap(date(2023, 1, 1), date(2023, 12, 31), date(2024, 1, 1), None)


class TestCreate:
    def test_create_rounds_percentage(self, registry: RateRegistry) -> None:
        rate = registry.create(RateKind.LEGAL, Decimal("2.456"), date(2024, 1, 1), date(2024, 12, 31))

        assert rate.id
        assert rate.percentage == Decimal("2.46")
        assert registry.get(rate.id).kind is RateKind.LEGAL

    def test_overlap_rejected(self, registry: RateRegistry) -> None:
        first = registry.create(RateKind.LEGAL, Decimal("2.5"), date(2024, 1, 1), date(2024, 12, 31))

        with pytest.raises(RateOverlapError) as exc_info:
            registry.create(RateKind.LEGAL, Decimal("3"), date(2024, 6, 1), None)

        assert exc_info.value.existing_id == first.id
        assert exc_info.value.code == "RATE_OVERLAP"
        assert len(registry.list_rates()) == 1

    def test_overlap_allowed_when_requested(self, registry: RateRegistry) -> None:
        registry.create(RateKind.LEGAL, Decimal("2.5"), date(2024, 1, 1), date(2024, 12, 31))
        registry.create(RateKind.LEGAL, Decimal("3"), date(2024, 6, 1), None, allow_overlap=True)

        assert len(registry.list_by_kind(RateKind.LEGAL)) == 2

    def test_other_kind_does_not_overlap(self, registry: RateRegistry) -> None:
        registry.create(RateKind.LEGAL, Decimal("2.5"), date(2024, 1, 1), None)
        registry.create(RateKind.MORATORY, Decimal("12"), date(2024, 1, 1), None)

        assert len(registry.list_rates()) == 2

    @pytest.mark.parametrize(
        "percentage, valid_from, valid_to",
        [
            (Decimal("-1"), date(2024, 1, 1), None),
            (Decimal("100.01"), date(2024, 1, 1), None),
            (Decimal("NaN"), date(2024, 1, 1), None),
            (Decimal("sNaN"), date(2024, 1, 1), None),
            (Decimal("Infinity"), date(2024, 1, 1), None),
            (None, date(2024, 1, 1), None),
            (Decimal("2"), None, None),
            (Decimal("2"), date(2024, 2, 1), date(2024, 1, 1)),
        ],
    )
    def test_invalid_fields(self, registry: RateRegistry, percentage, valid_from, valid_to) -> None:
        with pytest.raises(ValidationError):
            registry.create(RateKind.LEGAL, percentage, valid_from, valid_to)
        assert registry.list_rates() == []


class TestResolve:
    def test_latest_covering_record_wins(self, registry: RateRegistry) -> None:
        registry.create(RateKind.LEGAL, Decimal("2"), date(2023, 1, 1), None)
        newer = registry.create(RateKind.LEGAL, Decimal("2.5"), date(2024, 1, 1), None, allow_overlap=True)

        assert registry.resolve(RateKind.LEGAL, date(2024, 5, 1)).id == newer.id
        assert registry.resolve(RateKind.LEGAL, date(2023, 5, 1)).percentage == Decimal("2.00")

    def test_legal_has_no_fallback(self, registry: RateRegistry) -> None:
        registry.create(RateKind.LEGAL, Decimal("2"), date(2023, 1, 1), date(2023, 12, 31))

        assert registry.resolve(RateKind.LEGAL, date(2024, 2, 1)) is None
        assert not registry.has_valid_rate(RateKind.LEGAL, date(2024, 2, 1))

    def test_moratory_falls_back_to_latest_started(self, registry: RateRegistry) -> None:
        registry.create(RateKind.MORATORY, Decimal("12"), date(2023, 7, 1), date(2023, 12, 31))
        latest = registry.create(RateKind.MORATORY, Decimal("12.5"), date(2024, 1, 1), date(2024, 6, 30))

        assert registry.resolve(RateKind.MORATORY, date(2024, 9, 1)).id == latest.id
        assert registry.resolve(RateKind.MORATORY, date(2023, 1, 1)) is None

    def test_defaults_to_today(self, seeded_registry: RateRegistry) -> None:
        # the registry clock is 2024-03-15
        assert seeded_registry.resolve(RateKind.MORATORY).percentage == Decimal("12.50")

    def test_current_rates(self, seeded_registry: RateRegistry) -> None:
        current = seeded_registry.current_rates()

        assert [r.kind for r in current] == [RateKind.LEGAL, RateKind.MORATORY]
        assert seeded_registry.current_rates(date(2024, 9, 1))[0].kind is RateKind.LEGAL
        assert len(seeded_registry.current_rates(date(2024, 9, 1))) == 1


class TestQueries:
    def test_get_unknown(self, registry: RateRegistry) -> None:
        with pytest.raises(RateNotFoundError):
            registry.get("missing")

    def test_list_order(self, registry: RateRegistry) -> None:
        registry.create(RateKind.MORATORY, Decimal("12"), date(2023, 7, 1), date(2023, 12, 31))
        registry.create(RateKind.LEGAL, Decimal("5"), date(2023, 1, 1), date(2023, 12, 31))
        registry.create(RateKind.LEGAL, Decimal("2.5"), date(2024, 1, 1), date(2024, 12, 31))

        listed = [(r.kind, r.valid_from) for r in registry.list_rates()]

        assert listed == [
            (RateKind.LEGAL, date(2024, 1, 1)),
            (RateKind.LEGAL, date(2023, 1, 1)),
            (RateKind.MORATORY, date(2023, 7, 1)),
        ]

    def test_expiring_between(self, seeded_registry: RateRegistry) -> None:
        expiring = seeded_registry.expiring_between(date(2024, 6, 1), date(2024, 7, 1))

        assert [r.kind for r in expiring] == [RateKind.MORATORY]

    def test_find_overlap_excludes_record(self, seeded_registry: RateRegistry) -> None:
        legal = seeded_registry.resolve(RateKind.LEGAL)

        assert seeded_registry.find_overlap(RateKind.LEGAL, date(2024, 3, 1), date(2024, 3, 31)).id == legal.id
        assert seeded_registry.find_overlap(RateKind.LEGAL, date(2024, 3, 1), None, exclude_id=legal.id) is None
        assert seeded_registry.find_overlap(RateKind.LEGAL, date(2025, 1, 1), None) is None

    @pytest.mark.parametrize(
        "first, second, overlapping",
        [
            ((date(2024, 1, 1), date(2024, 6, 30)), (date(2024, 7, 1), date(2024, 12, 31)), False),
            ((date(2024, 1, 1), date(2024, 6, 30)), (date(2024, 6, 30), date(2024, 12, 31)), True),
            ((date(2024, 1, 1), date(2024, 12, 31)), (date(2024, 3, 1), date(2024, 3, 31)), True),
            ((date(2024, 1, 1), None), (date(2030, 1, 1), None), True),
            ((date(2024, 1, 1), None), (date(2023, 1, 1), date(2023, 12, 31)), False),
            ((date(2024, 1, 1), date(2024, 12, 31)), (date(2024, 1, 1), date(2024, 12, 31)), True),
        ],
    )
    def test_find_overlap_is_symmetric(self, registry: RateRegistry, first, second, overlapping) -> None:
        registry.create(RateKind.LEGAL, Decimal("2.5"), *first)
        registry.create(RateKind.MORATORY, Decimal("12"), *second)

        second_hits_first = registry.find_overlap(RateKind.LEGAL, *second) is not None
        first_hits_second = registry.find_overlap(RateKind.MORATORY, *first) is not None

        assert second_hits_first == first_hits_second == overlapping


class TestUpdateDelete:
    def test_update_changes_only_given_fields(self, seeded_registry: RateRegistry) -> None:
        legal = seeded_registry.resolve(RateKind.LEGAL)

        updated = seeded_registry.update(legal.id, percentage=Decimal("2.75"), note="corrected")

        assert updated.percentage == Decimal("2.75")
        assert updated.note == "corrected"
        assert updated.reference == "DM 2023"
        assert updated.valid_to == date(2024, 12, 31)

    def test_update_can_open_the_window(self, seeded_registry: RateRegistry) -> None:
        legal = seeded_registry.resolve(RateKind.LEGAL)

        updated = seeded_registry.update(legal.id, valid_to=None)

        assert updated.valid_to is None

    def test_update_overlap_rejected(self, seeded_registry: RateRegistry) -> None:
        later = seeded_registry.create(RateKind.MORATORY, Decimal("11"), date(2024, 7, 1), date(2024, 12, 31))

        with pytest.raises(RateOverlapError):
            seeded_registry.update(later.id, valid_from=date(2024, 6, 1))
        assert seeded_registry.get(later.id).valid_from == date(2024, 7, 1)

    def test_update_validates(self, seeded_registry: RateRegistry) -> None:
        legal = seeded_registry.resolve(RateKind.LEGAL)

        with pytest.raises(ValidationError):
            seeded_registry.update(legal.id, valid_from=date(2025, 1, 1))

    def test_update_unknown(self, registry: RateRegistry) -> None:
        with pytest.raises(RateNotFoundError):
            registry.update("missing", percentage=Decimal("1"))

    def test_delete(self, seeded_registry: RateRegistry) -> None:
        legal = seeded_registry.resolve(RateKind.LEGAL)

        seeded_registry.delete(legal.id)

        assert seeded_registry.resolve(RateKind.LEGAL) is None
        with pytest.raises(RateNotFoundError):
            seeded_registry.delete(legal.id)
