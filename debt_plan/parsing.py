"""Pattern rules for extracting rates and dates from published pages.

The external publishers expose plain HTML: tables of rates, press
communiqués written in Italian and the central-bank rate table in English.
``PageContent`` reduces a page to what the sources look at (visible text,
table rows, links and headings); the remaining functions turn fragments of
that text into ``Decimal`` percentages, dates and validity windows.
"""

from __future__ import annotations

import html.parser
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Pattern, Tuple

ITALIAN_MONTHS: Dict[str, int] = {
    "gennaio": 1,
    "febbraio": 2,
    "marzo": 3,
    "aprile": 4,
    "maggio": 5,
    "giugno": 6,
    "luglio": 7,
    "agosto": 8,
    "settembre": 9,
    "ottobre": 10,
    "novembre": 11,
    "dicembre": 12,
}

ENGLISH_MONTH_ABBREVIATIONS: Dict[str, int] = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

_MONTH_PATTERN = "(" + "|".join(ITALIAN_MONTHS) + ")"
_START_PHRASE = r"(?:a\s+decorrere\s+dal|con\s+decorrenza\s+dal|a\s+partire\s+dal|dal)"
_START_WITH_MONTH = re.compile(_START_PHRASE + r"\s+(\d{1,2})(?:°|º)?\s+" + _MONTH_PATTERN + r"\s+(\d{4})", re.I)
_START_NUMERIC = re.compile(_START_PHRASE + r"\s+(\d{1,2})[/.-](\d{1,2})[/.-](\d{4})", re.I)
_ANY_DATE_WITH_MONTH = re.compile(r"(\d{1,2})(?:°|º)?\s+" + _MONTH_PATTERN + r"\s+(\d{4})", re.I)
_PERCENT_NEAR = re.compile(r"(\d{1,2}[.,]\d{1,2})\s*%|(\d{1,2}[.,]\d{1,2})\s*per\s*cento", re.I)
_ITALIAN_DATE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")
_PERIOD_RANGE = re.compile(r"(\d{2}/\d{2}/\d{4})\s*-\s*(\d{2}/\d{2}/\d{4})")
_PERIOD_SINGLE = re.compile(r"(\d{2}/\d{2}/\d{4})")
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")

# Tags whose text is never shown on the page.
_HIDDEN_TAGS = ("head", "script", "style")


class PageContent(html.parser.HTMLParser):
    """Collects the visible text, table rows, links and headings of a page.

    Feed it with ``PageContent.parse(html)``. Table rows are lists of cell
    texts; ``tbody_rows`` keeps only the rows found inside a ``<tbody>``.
    """

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.collected_text: List[str] = []
        self.rows: List[List[str]] = []
        self.tbody_rows: List[List[str]] = []
        self.links: List[Tuple[str, str]] = []
        self.title = ""
        self.h1 = ""

        self._hidden_depth = 0
        self._in_tbody = 0
        self._row: Optional[List[str]] = None
        self._cell: Optional[List[str]] = None
        self._link_href: Optional[str] = None
        self._link_text: List[str] = []
        self._in_title = False
        self._in_h1 = False
        self._h1_seen = False

    @classmethod
    def parse(cls, markup: str) -> "PageContent":
        page = cls()
        page.feed(markup)
        page.close()
        return page

    @property
    def text(self) -> str:
        return " ".join(self.collected_text)

    def handle_starttag(self, tag, attrs):
        if tag in _HIDDEN_TAGS:
            self._hidden_depth += 1
        elif tag == "title":
            self._in_title = True
        elif tag == "h1" and not self._h1_seen:
            self._in_h1 = True
        elif tag == "tbody":
            self._in_tbody += 1
        elif tag == "tr":
            self._row = []
        elif tag in ("td", "th") and self._row is not None:
            self._cell = []
        elif tag == "a":
            self._link_href = dict(attrs).get("href")
            self._link_text = []
        elif tag in ("br", "p", "div", "li"):
            # Block boundaries separate words in the collected text.
            if self._cell is not None:
                self._cell.append(" ")

    def handle_endtag(self, tag):
        if tag in _HIDDEN_TAGS:
            self._hidden_depth = max(self._hidden_depth - 1, 0)
        elif tag == "title":
            self._in_title = False
        elif tag == "h1" and self._in_h1:
            self._in_h1 = False
            self._h1_seen = True
        elif tag == "tbody":
            self._in_tbody = max(self._in_tbody - 1, 0)
        elif tag in ("td", "th") and self._cell is not None and self._row is not None:
            self._row.append(_squash("".join(self._cell)))
            self._cell = None
        elif tag == "tr" and self._row is not None:
            self.rows.append(self._row)
            if self._in_tbody:
                self.tbody_rows.append(self._row)
            self._row = None
        elif tag == "a" and self._link_href is not None:
            self.links.append((self._link_href, _squash("".join(self._link_text))))
            self._link_href = None

    def handle_data(self, data):
        if self._in_title:
            self.title += data
            return
        if self._hidden_depth:
            return
        if self._in_h1:
            self.h1 += data
        if self._cell is not None:
            self._cell.append(data)
        if self._link_href is not None:
            self._link_text.append(data)
        if text := data.strip():
            self.collected_text.append(" ".join(text.split()))

    def heading(self) -> str:
        """Return the first ``<h1>`` text, else the ``<title>``."""
        return _squash(self.h1) or _squash(self.title)

    def rows_with_cells(self, minimum: int) -> List[List[str]]:
        """Return the rows of ``td``/``th`` cells with at least ``minimum`` cells."""
        return [row for row in self.rows if len(row) >= minimum]


def _squash(text: str) -> str:
    return " ".join(text.split())


def parse_percentage(text: Optional[str]) -> Optional[Decimal]:
    """Parse ``"2,50%"``, ``"2.5"`` or ``"2,5 %"`` into ``Decimal("2.5")``.

    Returns ``None`` when no number can be read.
    """
    if not text:
        return None
    cleaned = text.replace("%", "").replace(",", ".").strip()
    match = _NUMBER.search(cleaned)
    if match is None:
        return None
    try:
        return Decimal(match.group(0))
    except InvalidOperation:
        return None


def parse_italian_month(name: str) -> Optional[int]:
    return ITALIAN_MONTHS.get(name.strip().lower())


def parse_italian_date(text: Optional[str]) -> Optional[date]:
    """Parse ``dd/mm/yyyy``; ``None`` for anything else or an impossible date."""
    if not text:
        return None
    match = _ITALIAN_DATE.fullmatch(text.strip())
    if match is None:
        return None
    day, month, year = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _date_or_none(year: int, month: Optional[int], day: int) -> Optional[date]:
    if month is None:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def extract_start_date(text: str, any_date: bool = True) -> Optional[date]:
    """Find the date a rate takes effect in a communiqué.

    Looks, in order, for "dal / a decorrere dal / con decorrenza dal" followed
    by a day, an Italian month name and a year; the same phrasing followed by
    a numeric date; and finally, when ``any_date`` is set, any "day month
    year" date in the text.
    """
    match = _START_WITH_MONTH.search(text)
    if match:
        found = _date_or_none(int(match.group(3)), parse_italian_month(match.group(2)), int(match.group(1)))
        if found is not None:
            return found

    match = _START_NUMERIC.search(text)
    if match:
        found = _date_or_none(int(match.group(3)), int(match.group(2)), int(match.group(1)))
        if found is not None:
            return found

    if not any_date:
        return None
    match = _ANY_DATE_WITH_MONTH.search(text)
    if match:
        return _date_or_none(int(match.group(3)), parse_italian_month(match.group(2)), int(match.group(1)))
    return None


def extract_percentage_near_keyword(text: str, keyword: Pattern[str]) -> Optional[Decimal]:
    """Return the first percentage within the window around ``keyword``.

    The window starts 50 characters before the keyword and ends 200 after
    it. Both ``"2,5%"`` and ``"2,5 per cento"`` are recognised.
    """
    match = keyword.search(text)
    if match is None:
        return None
    window = text[max(match.start() - 50, 0):match.start() + 200]
    found = _PERCENT_NEAR.search(window)
    if found is None:
        return None
    return parse_percentage(found.group(1) or found.group(2))


def first_percentage(text: str) -> Optional[Decimal]:
    found = _PERCENT_NEAR.search(text)
    if found is None:
        return None
    return parse_percentage(found.group(1) or found.group(2))


def parse_ecb_date(year_text: str, day_month_text: str) -> Optional[date]:
    """Parse the split date of the central-bank table, e.g. ``"2024"``, ``"18 Sep."``."""
    try:
        year = int(year_text.strip())
    except ValueError:
        return None
    parts = day_month_text.replace(".", " ").split()
    if len(parts) < 2:
        return None
    try:
        day = int(parts[0])
    except ValueError:
        return None
    return _date_or_none(year, ENGLISH_MONTH_ABBREVIATIONS.get(parts[1][:3].lower()), day)


def parse_period(text: str) -> Tuple[Optional[date], Optional[date]]:
    """Parse ``"01/01/2024 - 30/06/2024"`` or ``"dal 01/01/2024"``.

    A single date yields an open-ended period ``(start, None)``; unreadable
    text yields ``(None, None)``.
    """
    cleaned = re.sub(r"dal\s+", "", text, flags=re.I).strip()
    match = _PERIOD_RANGE.search(cleaned)
    if match:
        return parse_italian_date(match.group(1)), parse_italian_date(match.group(2))
    match = _PERIOD_SINGLE.search(cleaned)
    if match:
        return parse_italian_date(match.group(1)), None
    return None, None


def year_window(start: date) -> Tuple[date, date]:
    """Return ``(start, 31 December of the same year)``."""
    return start, date(start.year, 12, 31)


def semester_window(on_date: date) -> Tuple[date, date]:
    """Return the half-year (January-June or July-December) containing ``on_date``."""
    if on_date.month <= 6:
        return date(on_date.year, 1, 1), date(on_date.year, 6, 30)
    return date(on_date.year, 7, 1), date(on_date.year, 12, 31)
