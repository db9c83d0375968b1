"""Adapters for the external publishers of legal and moratory rates.

Every source turns one publisher's pages into ``CandidateRate`` objects
through the uniform ``fetch(fetcher)`` call. Sources raise ``FetchError``
when a page cannot be retrieved and ``SourceParseError`` when a page no
longer matches the expected layout; the sourcing pipeline records either
one as a per-source failure.

Official sources: the central-bank rate table (moratory rate = main
refinancing rate + statutory spread), the Bank of Italy legal-rate page and
the ministry communiqués. The two tables of avvocatoandreani.it are
secondary sources; their candidates carry ``is_official=False``.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, List, Optional, Set
from urllib.parse import urljoin

from .config import DebtPlanConfig, InterestDefaults, SourcingConfig
from .data_models import CandidateRate, RateKind
from .exceptions import ExternalFetchError, SourceParseError
from .fetcher import HttpFetcher
from .logging import get_logger
from .parsing import (
    PageContent,
    extract_percentage_near_keyword,
    extract_start_date,
    first_percentage,
    parse_ecb_date,
    parse_italian_date,
    parse_percentage,
    parse_period,
    semester_window,
    year_window,
)
from .utils import round2

logger = get_logger(__name__)

MEF_HOST = "https://www.mef.gov.it"
MEF_LINK_KEYWORDS = ("tasso", "tassi", "interesse", "moratorio", "legale")
MEF_MAX_LINKS = 200

_LEGAL_KEYWORD = re.compile(r"tasso (di interesse )?legale|saggio di interesse legale", re.I)
_MORATORY_KEYWORD = re.compile(r"tasso moratorio|tassi moratori", re.I)
_BANCA_ITALIA_KEYWORD = re.compile(r"saggio\s+(?:di\s+)?interesse\s+legale|tasso\s+(?:di\s+interesse\s+)?legale", re.I)


class RateSource(ABC):
    """One external publisher of rates."""

    name: str = ""
    official: bool = True

    def __init__(self, url: str, now: Callable[[], datetime] = datetime.now) -> None:
        self.url = url
        self._now = now

    @abstractmethod
    def fetch(self, fetcher: HttpFetcher) -> List[CandidateRate]:
        """Retrieve and parse the publisher's pages."""

    def _candidate(self, **fields) -> CandidateRate:
        fields.setdefault("source_url", self.url)
        return CandidateRate(source=self.name, fetched_at=self._now(), is_official=self.official, **fields)


class EcbReferenceRateSource(RateSource):
    """Moratory rate derived from the central bank's main refinancing rate.

    The first row of the rate table holds the latest decision: year, day and
    month, deposit facility rate and main refinancing rate. The candidate
    covers the half-year containing the decision date.
    """

    name = "ecb"

    def __init__(self, url: str, spread: Decimal = Decimal("8"), now: Callable[[], datetime] = datetime.now) -> None:
        super().__init__(url, now)
        self.spread = spread

    def fetch(self, fetcher: HttpFetcher) -> List[CandidateRate]:
        page = PageContent.parse(fetcher.fetch_text(self.url))
        rows = page.tbody_rows or page.rows
        if not rows or len(rows[0]) < 4:
            raise SourceParseError("Central-bank rate table not found")

        year_text, day_month_text, _, rate_text = rows[0][:4]
        effective = parse_ecb_date(year_text, day_month_text)
        reference_rate = parse_percentage(rate_text)
        if effective is None or reference_rate is None:
            raise SourceParseError(f"Unreadable central-bank rate row: {rows[0]!r}")

        valid_from, valid_to = semester_window(effective)
        return [
            self._candidate(
                kind=RateKind.MORATORY,
                percentage=round2(reference_rate + self.spread),
                valid_from=valid_from,
                valid_to=valid_to,
                reference=f"ECB main refinancing rate {round2(reference_rate)}% + {self.spread} points",
                calculation_details=f"ECB {round2(reference_rate)}% (from {effective.isoformat()}) + {self.spread} points",
                note="Computed from the official ECB key interest rates",
            )
        ]


class BancaItaliaLegalSource(RateSource):
    """Legal rate from the Bank of Italy page, valid to the end of its year."""

    name = "banca-italia"

    def fetch(self, fetcher: HttpFetcher) -> List[CandidateRate]:
        page = PageContent.parse(fetcher.fetch_text(self.url))
        text = page.text
        percentage = extract_percentage_near_keyword(text, _BANCA_ITALIA_KEYWORD)
        if percentage is None:
            percentage = first_percentage(text)
        if percentage is None:
            raise SourceParseError("Legal rate not found on the Bank of Italy page")

        start = extract_start_date(text, any_date=False)
        if start is None:
            start = date(self._now().year, 1, 1)
        valid_from, valid_to = year_window(start)
        return [
            self._candidate(
                kind=RateKind.LEGAL,
                percentage=percentage,
                valid_from=valid_from,
                valid_to=valid_to,
                reference="Banca d'Italia - Saggio di interesse legale",
                note="Retrieved from the official Bank of Italy page",
            )
        ]


class MefCommuniqueSource(RateSource):
    """Legal and moratory rates announced in the ministry's press communiqués.

    The communiqué index is paginated per year; the current year and the
    previous ``years_back`` years are scanned until both kinds are found.
    """

    name = "mef"

    def __init__(
        self,
        url: str,
        max_pages: int = 5,
        page_size: int = 100,
        years_back: int = 2,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__(url.rstrip("/"), now)
        self.max_pages = max_pages
        self.page_size = page_size
        self.years_back = years_back

    def index_url(self, year: int, page: int) -> str:
        return f"{self.url}/{year}/index.html?page={page}&pagesize={self.page_size}"

    def communique_links(self, markup: str, year: int) -> List[str]:
        """Return the communiqué links of ``year``, keyword matches preferred."""
        base = self.url if self.url.startswith("http") else MEF_HOST + self.url
        page = PageContent.parse(markup)
        links: List[str] = []
        keyword_links: List[str] = []
        for href, text in page.links:
            if not href or f"/ufficio-stampa/comunicati/{year}/" not in href or "index.html" in href:
                continue
            url = urljoin(base + "/", href)
            if url not in links:
                links.append(url)
            if any(k in text.lower() for k in MEF_LINK_KEYWORDS) and url not in keyword_links:
                keyword_links.append(url)
        return (keyword_links or links)[:MEF_MAX_LINKS]

    def parse_communique(self, markup: str, url: str) -> List[CandidateRate]:
        page = PageContent.parse(markup)
        text = page.text
        lowered = text.lower()
        title = page.heading() or "Comunicato MEF"
        found: List[CandidateRate] = []

        if "tasso legale" in lowered or "interesse legale" in lowered:
            percentage = extract_percentage_near_keyword(text, _LEGAL_KEYWORD)
            start = extract_start_date(text)
            if percentage is not None and start is not None:
                valid_from, valid_to = year_window(start)
                found.append(self._candidate(
                    kind=RateKind.LEGAL, percentage=percentage, valid_from=valid_from, valid_to=valid_to,
                    reference=title, source_url=url, note="Retrieved from a MEF communiqué",
                ))

        if "tasso moratorio" in lowered or "tassi moratori" in lowered:
            percentage = extract_percentage_near_keyword(text, _MORATORY_KEYWORD)
            start = extract_start_date(text)
            if percentage is not None and start is not None:
                valid_from, valid_to = semester_window(start)
                found.append(self._candidate(
                    kind=RateKind.MORATORY, percentage=percentage, valid_from=valid_from, valid_to=valid_to,
                    reference=title, source_url=url, note="Retrieved from a MEF communiqué",
                ))
        return found

    def fetch(self, fetcher: HttpFetcher) -> List[CandidateRate]:
        current_year = self._now().year
        rates: List[CandidateRate] = []
        index_failures: List[ExternalFetchError] = []

        for year in range(current_year, current_year - self.years_back - 1, -1):
            try:
                links = self._collect_links(fetcher, year)
            except ExternalFetchError as exc:
                logger.warning("MEF index for %d unavailable: %s", year, exc)
                index_failures.append(exc)
                continue

            for link in links:
                if _has_both_kinds(rates):
                    break
                try:
                    parsed = self.parse_communique(fetcher.fetch_text(link), link)
                except ExternalFetchError as exc:
                    logger.warning("MEF communiqué %s unavailable: %s", link, exc)
                    continue
                for candidate in parsed:
                    if not any(r.kind == candidate.kind and r.valid_from == candidate.valid_from for r in rates):
                        rates.append(candidate)

        if len(index_failures) == self.years_back + 1:
            raise index_failures[0]
        return rates

    def _collect_links(self, fetcher: HttpFetcher, year: int) -> List[str]:
        collected: List[str] = []
        seen: Set[str] = set()
        for page in range(1, self.max_pages + 1):
            links = self.communique_links(fetcher.fetch_text(self.index_url(year, page)), year)
            for link in links:
                if link not in seen:
                    seen.add(link)
                    collected.append(link)
            if len(links) < self.page_size:
                break
        return collected


def _has_both_kinds(rates: List[CandidateRate]) -> bool:
    kinds = {r.kind for r in rates}
    return RateKind.LEGAL in kinds and RateKind.MORATORY in kinds


class AndreaniLegalSource(RateSource):
    """Legal-rate history table: start, end (``---`` when open), rate, decree."""

    name = "andreani"
    official = False

    def fetch(self, fetcher: HttpFetcher) -> List[CandidateRate]:
        page = PageContent.parse(fetcher.fetch_text(self.url))
        latest: Optional[tuple] = None
        for row in page.rows_with_cells(4):
            start = parse_italian_date(row[0])
            percentage = parse_percentage(row[2])
            if start is None or percentage is None:
                continue
            end = None if row[1].strip() == "---" else parse_italian_date(row[1])
            if latest is None or start > latest[0]:
                latest = (start, end, percentage, row[3])

        if latest is None:
            raise SourceParseError("Legal-rate table not found")
        start, end, percentage, decree = latest
        return [
            self._candidate(
                kind=RateKind.LEGAL,
                percentage=percentage,
                valid_from=start,
                valid_to=end,
                reference=decree or None,
                note="Scraped from the legal-rate table of avvocatoandreani.it",
            )
        ]


class AndreaniMoratorySource(RateSource):
    """Moratory-rate table; the last row holds the current period."""

    name = "andreani"
    official = False

    def fetch(self, fetcher: HttpFetcher) -> List[CandidateRate]:
        page = PageContent.parse(fetcher.fetch_text(self.url))
        if not page.rows or len(page.rows[-1]) < 3:
            raise SourceParseError("Moratory-rate table not found")

        period_text, rate_text, decree = page.rows[-1][:3]
        valid_from, valid_to = parse_period(period_text)
        percentage = parse_percentage(rate_text)
        if valid_from is None or percentage is None:
            raise SourceParseError(f"Unreadable moratory-rate row: {page.rows[-1]!r}")

        details = None
        if "bce" in rate_text.lower():
            details = "ECB rate + 8 points"
        return [
            self._candidate(
                kind=RateKind.MORATORY,
                percentage=percentage,
                valid_from=valid_from,
                valid_to=valid_to,
                reference=decree or None,
                calculation_details=details,
                note="Scraped from the moratory-rate table of avvocatoandreani.it",
            )
        ]


def default_sources(
    config: Optional[DebtPlanConfig] = None, now: Callable[[], datetime] = datetime.now
) -> List[RateSource]:
    """Build the configured sources in the order they are queried."""
    config = config or DebtPlanConfig()
    sourcing: SourcingConfig = config.sourcing
    interest: InterestDefaults = config.interest
    urls = sourcing.urls
    return [
        EcbReferenceRateSource(urls.ecb_rates, spread=interest.moratory_statutory_spread, now=now),
        BancaItaliaLegalSource(urls.banca_italia_legal, now=now),
        MefCommuniqueSource(
            urls.mef_index,
            max_pages=sourcing.mef_max_pages,
            page_size=sourcing.mef_page_size,
            years_back=sourcing.mef_years_back,
            now=now,
        ),
        AndreaniLegalSource(urls.andreani_legal, now=now),
        AndreaniMoratorySource(urls.andreani_moratory, now=now),
    ]
