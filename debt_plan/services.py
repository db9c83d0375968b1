"""Wiring of the debt-plan components for the CLI and the web API."""

from __future__ import annotations

from datetime import date, datetime
from typing import Callable, Optional

from .collaborators import LogNotifier, Notifier
from .config import DebtPlanConfig
from .fetcher import HttpFetcher
from .lifecycle import PlanService
from .monitor import RateMonitor
from .pipeline import RateSourcingPipeline
from .registry import RateRegistry
from .sources import default_sources
from .store import Database


class Services:
    """Builds each component once, on first use.

    Commands that never touch the database (``schedule``) therefore never
    open one.
    """

    def __init__(
        self,
        config: Optional[DebtPlanConfig] = None,
        database: Optional[Database] = None,
        fetcher: Optional[HttpFetcher] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], date] = date.today,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config or DebtPlanConfig()
        self._database = database
        self._fetcher = fetcher
        self.notifier = notifier or LogNotifier()
        self.clock = clock
        self.now = now
        self._registry: Optional[RateRegistry] = None
        self._plans: Optional[PlanService] = None
        self._pipeline: Optional[RateSourcingPipeline] = None
        self._monitor: Optional[RateMonitor] = None

    @property
    def database(self) -> Database:
        if self._database is None:
            self._database = Database(self.config.database_url)
        return self._database

    @property
    def fetcher(self) -> HttpFetcher:
        if self._fetcher is None:
            self._fetcher = HttpFetcher(self.config.sourcing)
        return self._fetcher

    @property
    def registry(self) -> RateRegistry:
        if self._registry is None:
            self._registry = RateRegistry(self.database.session_factory, clock=self.clock)
        return self._registry

    @property
    def plans(self) -> PlanService:
        if self._plans is None:
            self._plans = PlanService(
                self.database.session_factory,
                self.registry,
                interest_defaults=self.config.interest,
                clock=self.clock,
            )
        return self._plans

    @property
    def pipeline(self) -> RateSourcingPipeline:
        if self._pipeline is None:
            self._pipeline = RateSourcingPipeline(
                default_sources(self.config, now=self.now), self.fetcher, self.registry, now=self.now
            )
        return self._pipeline

    @property
    def monitor(self) -> RateMonitor:
        if self._monitor is None:
            self._monitor = RateMonitor(
                self.registry,
                self.notifier,
                pipeline=self.pipeline,
                monitor_config=self.config.monitor,
                sourcing_config=self.config.sourcing,
                clock=self.clock,
            )
        return self._monitor
