from __future__ import annotations

import pytest

from sref_proxy.services.errors import (
    UpstreamParseError,
    UpstreamStatusError,
    UpstreamTimeout,
    UpstreamTransportError,
)
from sref_proxy.services.retry import backoff_delay, fetch_with_retry


class _ScriptedFetch:
    def __init__(self, *outcomes) -> None:
        self._outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, station: str, run: str, parameter: str, date: str):
        self.calls += 1
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_backoff_doubles_per_attempt() -> None:
    assert [backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
    assert backoff_delay(2, base_delay=0.5) == 1.0


@pytest.mark.anyio
async def test_succeeds_on_third_attempt_after_backoff() -> None:
    fetch = _ScriptedFetch(UpstreamTimeout("Request timeout"), UpstreamStatusError(503), {"A": {"data": []}})
    sleep = _SleepRecorder()

    result = await fetch_with_retry(fetch, "JFK", "09", "3hrly-TMP", "2025-01-15", max_attempts=3, sleep=sleep)

    assert result == {"A": {"data": []}}
    assert fetch.calls == 3
    assert sleep.delays == [1.0, 2.0]
    assert sum(sleep.delays) >= 3.0


@pytest.mark.anyio
async def test_client_error_is_not_retried() -> None:
    fetch = _ScriptedFetch(UpstreamStatusError(404), {"A": {}})
    sleep = _SleepRecorder()

    with pytest.raises(UpstreamStatusError) as excinfo:
        await fetch_with_retry(fetch, "JFK", "09", "3hrly-TMP", "2025-01-15", sleep=sleep)

    assert fetch.calls == 1
    assert sleep.delays == []
    assert excinfo.value.attempts == 1


@pytest.mark.anyio
async def test_parse_error_is_not_retried() -> None:
    fetch = _ScriptedFetch(UpstreamParseError("bad body"))
    sleep = _SleepRecorder()

    with pytest.raises(UpstreamParseError):
        await fetch_with_retry(fetch, "JFK", "09", "3hrly-TMP", "2025-01-15", sleep=sleep)

    assert fetch.calls == 1


@pytest.mark.anyio
async def test_non_transient_transport_error_is_not_retried() -> None:
    fetch = _ScriptedFetch(UpstreamTransportError("unsupported protocol", transient=False))
    sleep = _SleepRecorder()

    with pytest.raises(UpstreamTransportError):
        await fetch_with_retry(fetch, "JFK", "09", "3hrly-TMP", "2025-01-15", sleep=sleep)

    assert fetch.calls == 1


@pytest.mark.anyio
async def test_exhaustion_surfaces_last_error() -> None:
    fetch = _ScriptedFetch(
        UpstreamTransportError("connection reset"),
        UpstreamTimeout("Request timeout"),
        UpstreamStatusError(502),
    )
    sleep = _SleepRecorder()

    with pytest.raises(UpstreamStatusError) as excinfo:
        await fetch_with_retry(fetch, "JFK", "09", "3hrly-TMP", "2025-01-15", max_attempts=3, sleep=sleep)

    assert excinfo.value.status_code == 502
    assert excinfo.value.attempts == 3
    assert fetch.calls == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.anyio
async def test_single_attempt_never_sleeps() -> None:
    fetch = _ScriptedFetch(UpstreamTimeout("Request timeout"))
    sleep = _SleepRecorder()

    with pytest.raises(UpstreamTimeout):
        await fetch_with_retry(fetch, "JFK", "09", "3hrly-TMP", "2025-01-15", max_attempts=1, sleep=sleep)

    assert sleep.delays == []
