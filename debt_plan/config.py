"""Configuration management for debt-plan."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal

from .exceptions import ConfigurationError


@dataclass
class SourceUrls:
    """Addresses of the external rate publishers."""

    ecb_rates: str = (
        "https://www.ecb.europa.eu/stats/policy_and_exchange_rates/key_ecb_interest_rates/html/index.en.html"
    )
    banca_italia_legal: str = (
        "https://www.bancaditalia.it/compiti/vigilanza/intermediari/saggio-interesse/index.html"
    )
    mef_index: str = "https://www.mef.gov.it/ufficio-stampa/comunicati"
    andreani_legal: str = "https://www.avvocatoandreani.it/servizi/tab_interessi_legali.php"
    andreani_moratory: str = "https://www.avvocatoandreani.it/servizi/interessi_moratori.php"


@dataclass
class SourcingConfig:
    """Rate sourcing pipeline configuration."""

    enabled: bool = True
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_base_seconds: float = 0.1
    backoff_cap_seconds: float = 2.0
    mef_max_pages: int = 5
    mef_page_size: int = 100
    mef_years_back: int = 2
    user_agent: str = "Mozilla/5.0 (compatible; DebtPlanBot/1.0)"
    urls: SourceUrls = field(default_factory=SourceUrls)


@dataclass
class InterestDefaults:
    """Statutory adjustments applied to registry rates.

    ``moratory_surcharge_points`` is added to a moratory plan rate when the
    caller asks for the surcharge without a value; ``pre2013_reduction_points``
    is taken off moratory rates of transactions concluded before 2013;
    ``moratory_statutory_spread`` is added to the central-bank reference rate
    to obtain a moratory rate.
    """

    moratory_surcharge_points: Decimal = Decimal("4")
    pre2013_reduction_points: Decimal = Decimal("1")
    moratory_statutory_spread: Decimal = Decimal("8")


@dataclass
class MonitorConfig:
    expiry_horizon_days: int = 30
    audience: str = "admins"


@dataclass
class DebtPlanConfig:
    """Main configuration for debt-plan."""

    database_url: str = "sqlite:///debt_plan.sqlite3"
    log_level: str = "INFO"
    log_format: str = "standard"
    sourcing: SourcingConfig = field(default_factory=SourcingConfig)
    interest: InterestDefaults = field(default_factory=InterestDefaults)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)

    @classmethod
    def from_env(cls) -> "DebtPlanConfig":
        """Create config from environment variables."""
        defaults = SourceUrls()
        urls = SourceUrls(
            ecb_rates=os.getenv("RATES_FETCH_URL_ECB", defaults.ecb_rates),
            banca_italia_legal=os.getenv("RATES_FETCH_URL_BANCA_ITALIA_LEGAL", defaults.banca_italia_legal),
            mef_index=os.getenv("RATES_FETCH_URL_MEF_INDEX", defaults.mef_index),
            andreani_legal=os.getenv("RATES_FETCH_URL_ANDREANI_LEGAL", defaults.andreani_legal),
            andreani_moratory=os.getenv("RATES_FETCH_URL_ANDREANI_MORATORY", defaults.andreani_moratory),
        )

        try:
            sourcing = SourcingConfig(
                enabled=os.getenv("RATES_FETCH_ENABLED", "true").lower() == "true",
                timeout_seconds=float(os.getenv("RATES_FETCH_TIMEOUT", "30")),
                max_attempts=int(os.getenv("RATES_FETCH_RETRIES", "3")),
                mef_max_pages=int(os.getenv("RATES_FETCH_MEF_PAGES", "5")),
                mef_page_size=int(os.getenv("RATES_FETCH_MEF_PAGE_SIZE", "100")),
                urls=urls,
            )
            interest = InterestDefaults(
                moratory_surcharge_points=Decimal(os.getenv("MORATORY_SURCHARGE_POINTS", "4")),
                pre2013_reduction_points=Decimal(os.getenv("MORATORY_PRE2013_REDUCTION", "1")),
                moratory_statutory_spread=Decimal(os.getenv("MORATORY_STATUTORY_SPREAD", "8")),
            )
            monitor = MonitorConfig(
                expiry_horizon_days=int(os.getenv("RATES_EXPIRY_HORIZON_DAYS", "30")),
            )
        except ArithmeticError as exc:
            raise ConfigurationError(f"Invalid numeric configuration value: {exc}") from exc
        except ValueError as exc:
            raise ConfigurationError(f"Invalid configuration value: {exc}") from exc

        if sourcing.max_attempts < 1:
            raise ConfigurationError("RATES_FETCH_RETRIES must be at least 1")

        return cls(
            database_url=os.getenv("DEBT_PLAN_DATABASE_URL", "sqlite:///debt_plan.sqlite3"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "standard"),
            sourcing=sourcing,
            interest=interest,
            monitor=monitor,
        )
