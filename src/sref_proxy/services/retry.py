from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from sref_proxy.services.errors import UpstreamError

logger = logging.getLogger("sref_proxy.upstream.retry")

Fetcher = Callable[[str, str, str, str], Awaitable[dict[str, Any]]]
Sleeper = Callable[[float], Awaitable[Any]]


def backoff_delay(attempt: int, base_delay: float = 1.0) -> float:
    """Delay after failed attempt ``attempt`` (1-indexed): base, 2*base, 4*base, ..."""
    return base_delay * (2 ** (attempt - 1))


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamError) and bool(exc.transient)


async def fetch_with_retry(
    fetch: Fetcher,
    station: str,
    run: str,
    parameter: str,
    date: str,
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Sleeper = asyncio.sleep,
) -> dict[str, Any]:
    """Call ``fetch`` until it succeeds, fails permanently, or attempts run out.

    Only transient upstream failures are retried. The final error is raised
    unchanged, annotated with the number of attempts made.
    """
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fetch(station, run, parameter, date)
        except UpstreamError as exc:
            exc.attempts = attempt
            if not is_transient(exc):
                raise
            if attempt >= attempts:
                logger.warning(
                    "Upstream fetch %s-%s-%s %s failed after %s attempts: %s",
                    station,
                    run,
                    parameter,
                    date,
                    attempt,
                    exc,
                )
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                "Upstream fetch failed (attempt %s/%s): %s; retrying in %.1fs",
                attempt,
                attempts,
                exc,
                delay,
            )
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["backoff_delay", "fetch_with_retry", "is_transient"]
