"""Tests for the retrying HTTP fetcher."""

from typing import List

import pytest
import requests

from debt_plan.config import SourcingConfig
from debt_plan.exceptions import FetchError
from debt_plan.fetcher import HttpFetcher, backoff_delay


class FakeResponse:
    def __init__(self, status_code: int, text: str = "", reason: str = "") -> None:
        self.status_code = status_code
        self.text = text
        self.reason = reason

    @property
    def ok(self) -> bool:
        return self.status_code < 400


class FakeSession:
    """Plays back queued responses or exceptions, one per ``get``."""

    def __init__(self, outcomes: list) -> None:
        self.outcomes = list(outcomes)
        self.headers = {}
        self.calls: List[tuple] = []
        self.closed = False

    def get(self, url: str, timeout: float = None):
        self.calls.append((url, timeout))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True


@pytest.mark.parametrize(
    "attempt, expected",
    [(0, 0.1), (1, 0.2), (2, 0.4), (10, 2.0)],
)
def test_backoff_delay(attempt: int, expected: float) -> None:
    assert backoff_delay(attempt, 0.1, 2.0) == pytest.approx(expected)


class TestHttpFetcher:
    def _fetcher(self, session: FakeSession, sleeps: list, **config) -> HttpFetcher:
        return HttpFetcher(SourcingConfig(**config), session=session, sleep=sleeps.append)

    def test_returns_text(self) -> None:
        session = FakeSession([FakeResponse(200, "<html>ok</html>")])
        sleeps: list = []

        text = self._fetcher(session, sleeps, timeout_seconds=5).fetch_text("https://a.example")

        assert text == "<html>ok</html>"
        assert session.calls == [("https://a.example", 5)]
        assert session.headers["User-Agent"].startswith("Mozilla/5.0")
        assert sleeps == []

    def test_retries_then_succeeds(self) -> None:
        session = FakeSession([
            requests.ConnectionError("refused"),
            FakeResponse(503, reason="Service Unavailable"),
            FakeResponse(200, "done"),
        ])
        sleeps: list = []

        text = self._fetcher(session, sleeps, max_attempts=3).fetch_text("https://a.example")

        assert text == "done"
        assert len(session.calls) == 3
        assert sleeps == pytest.approx([0.1, 0.2])

    def test_gives_up_after_max_attempts(self) -> None:
        session = FakeSession([FakeResponse(500, reason="Server Error")] * 2)
        sleeps: list = []

        with pytest.raises(FetchError) as exc_info:
            self._fetcher(session, sleeps, max_attempts=2).fetch_text("https://a.example")

        assert exc_info.value.url == "https://a.example"
        assert exc_info.value.reason == "HTTP 500: Server Error"
        assert len(sleeps) == 1

    def test_timeout_counts_as_failure(self) -> None:
        session = FakeSession([requests.Timeout("read timed out")])

        with pytest.raises(FetchError, match="read timed out"):
            self._fetcher(session, [], max_attempts=1).fetch_text("https://a.example")

    def test_close(self) -> None:
        session = FakeSession([])

        self._fetcher(session, []).close()

        assert session.closed
