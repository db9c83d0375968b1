"""Pytest configuration and fixtures."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List

import pytest

from debt_plan.collaborators import Notifier
from debt_plan.config import DebtPlanConfig
from debt_plan.data_models import RateKind
from debt_plan.exceptions import FetchError
from debt_plan.lifecycle import PlanService
from debt_plan.registry import RateRegistry
from debt_plan.services import Services
from debt_plan.store import Database

TODAY = date(2024, 3, 15)
NOW = datetime(2024, 3, 15, 9, 30)


class RecordingNotifier(Notifier):
    """Keeps every notification for later inspection."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    def notify(self, audience: str, type: str, title: str, message: str, metadata: Dict[str, Any]) -> None:
        self.sent.append(
            {"audience": audience, "type": type, "title": title, "message": message, "metadata": metadata}
        )

    def of_type(self, type: str) -> List[Dict[str, Any]]:
        return [n for n in self.sent if n["type"] == type]


class FakeFetcher:
    """Serves canned pages by URL; unknown URLs fail like an unreachable host."""

    def __init__(self, pages: Dict[str, str] = None) -> None:
        self.pages = dict(pages or {})
        self.requested: List[str] = []

    def fetch_text(self, url: str) -> str:
        self.requested.append(url)
        if url not in self.pages:
            raise FetchError(url, "HTTP 404: Not Found")
        return self.pages[url]

    def close(self) -> None:
        pass


@pytest.fixture
def today() -> date:
    """Fixed 'today' used by every clock."""
    return TODAY


@pytest.fixture
def database() -> Database:
    """Fresh in-memory database."""
    db = Database("sqlite://")
    yield db
    db.dispose()


@pytest.fixture
def registry(database: Database) -> RateRegistry:
    return RateRegistry(database.session_factory, clock=lambda: TODAY)


@pytest.fixture
def plan_service(database: Database, registry: RateRegistry) -> PlanService:
    return PlanService(database.session_factory, registry, clock=lambda: TODAY)


@pytest.fixture
def seeded_registry(registry: RateRegistry) -> RateRegistry:
    """Registry with a legal rate and a moratory rate for 2024."""
    registry.create(RateKind.LEGAL, Decimal("2.5"), date(2024, 1, 1), date(2024, 12, 31), reference="DM 2023")
    registry.create(RateKind.MORATORY, Decimal("12.5"), date(2024, 1, 1), date(2024, 6, 30), reference="GU 2024")
    return registry


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def services(database: Database, notifier: RecordingNotifier, fake_fetcher: FakeFetcher) -> Services:
    """Service container wired to the in-memory database and fakes."""
    return Services(
        DebtPlanConfig(database_url="sqlite://"),
        database=database,
        fetcher=fake_fetcher,
        notifier=notifier,
        clock=lambda: TODAY,
        now=lambda: NOW,
    )
