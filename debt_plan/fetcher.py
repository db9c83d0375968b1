"""HTTP retrieval of external rate publications.

``HttpFetcher`` wraps a ``requests.Session`` with a per-attempt timeout, a
capped number of attempts and an exponential backoff between them
(``min(base * 2**attempt, cap)`` seconds). A non-2xx response counts as a
failed attempt. After the last attempt a ``FetchError`` is raised; callers
in the sourcing pipeline catch it per source.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

import requests

from .config import SourcingConfig
from .exceptions import FetchError
from .logging import get_logger

logger = get_logger(__name__)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Return the delay in seconds after the zero-based ``attempt``."""
    return min(base * (2 ** attempt), cap)


class HttpFetcher:
    """Fetch pages as text with bounded retries.

    Parameters
    ----------
    config: SourcingConfig
        Timeout, attempt cap, backoff and User-Agent.
    session: Optional[requests.Session]
        Session to reuse; a new one is created when omitted.
    sleep: Callable[[float], None]
        Used between attempts; tests pass a no-op.
    """

    def __init__(
        self,
        config: Optional[SourcingConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config or SourcingConfig()
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = self._config.user_agent
        self._sleep = sleep

    def fetch_text(self, url: str) -> str:
        attempts = self._config.max_attempts
        last_reason = "no attempt made"

        for attempt in range(attempts):
            try:
                rep = self._session.get(url, timeout=self._config.timeout_seconds)
                if rep.ok:
                    return rep.text
                last_reason = f"HTTP {rep.status_code}: {rep.reason}"
            except requests.RequestException as exc:
                last_reason = str(exc) or exc.__class__.__name__

            if attempt < attempts - 1:
                delay = backoff_delay(attempt, self._config.backoff_base_seconds, self._config.backoff_cap_seconds)
                logger.debug("Attempt %d/%d for %s failed (%s), retrying in %.2fs",
                             attempt + 1, attempts, url, last_reason, delay)
                self._sleep(delay)

        raise FetchError(url, last_reason)

    def close(self) -> None:
        self._session.close()
