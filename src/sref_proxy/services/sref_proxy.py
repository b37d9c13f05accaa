from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import date as date_cls, datetime, timezone
from typing import Callable, Iterable, Literal, Optional

from sref_proxy.config import Settings, settings as default_settings
from sref_proxy.services.admission import AdmissionController
from sref_proxy.services.cache_store import CacheStore, make_cache_key
from sref_proxy.services.errors import AdmissionDenied, ValidationError
from sref_proxy.services.retry import Sleeper, fetch_with_retry
from sref_proxy.services.series import ProcessedResult, member_count, process_series
from sref_proxy.services.ttl_policy import TtlPolicy, build_ttl_policy
from sref_proxy.services.upstream import UpstreamClient

logger = logging.getLogger("sref_proxy.proxy")

STATION_PATTERN = re.compile(r"[A-Za-z]{3,4}")
DATE_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")

CacheStatus = Literal["HIT", "MISS", "INCOMPLETE"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class SrefRequest:
    station: str
    run: str
    parameter: str
    date: str

    @property
    def cache_key(self) -> str:
        return make_cache_key(self.date, self.run, self.station, self.parameter)


@dataclass(frozen=True, slots=True)
class ProxyResult:
    data: ProcessedResult
    cache_status: CacheStatus
    members: int
    ttl_seconds: Optional[float] = None


def normalize_request(
    station: str,
    run: str,
    parameter: str,
    date: str | None,
    *,
    run_codes: Iterable[str],
    parameters: Iterable[str],
    today: date_cls | None = None,
) -> SrefRequest:
    if not STATION_PATTERN.fullmatch(station or ""):
        raise ValidationError("Invalid station format")
    if run not in set(run_codes):
        raise ValidationError("Invalid run time")
    if parameter not in set(parameters):
        raise ValidationError("Invalid parameter")
    if date is None or not date.strip():
        day = today or _utc_now().date()
        date = day.isoformat()
    else:
        date = date.strip()
        if not DATE_PATTERN.fullmatch(date):
            raise ValidationError("Invalid date format (expected YYYY-MM-DD)")
        try:
            date_cls.fromisoformat(date)
        except ValueError as exc:
            raise ValidationError("Invalid date") from exc
    return SrefRequest(station=station.upper(), run=run, parameter=parameter, date=date)


class SrefProxyService:
    """Cache-first access to upstream plume data.

    Cache hits return without touching admission control. Misses must pass
    the per-client token bucket, then fetch upstream with retries, process
    the members and cache the result only when enough members arrived.
    The fetch runs in its own task so an abandoned request still populates
    the cache.
    """

    def __init__(
        self,
        *,
        cache: CacheStore,
        admission: AdmissionController,
        upstream: UpstreamClient,
        ttl_policy: TtlPolicy,
        min_members: int = 10,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        coalesce: bool = False,
        sleep: Sleeper = asyncio.sleep,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.cache = cache
        self.admission = admission
        self.upstream = upstream
        self.ttl_policy = ttl_policy
        self._min_members = max(0, int(min_members))
        self._max_attempts = max(1, int(max_attempts))
        self._retry_base_delay = retry_base_delay
        self._coalesce = coalesce
        self._sleep = sleep
        self._now = now
        self._tasks: set[asyncio.Task[ProxyResult]] = set()
        self._inflight: dict[str, asyncio.Task[ProxyResult]] = {}

    @classmethod
    def from_settings(
        cls,
        config: Settings | None = None,
        *,
        upstream: UpstreamClient | None = None,
        cache: CacheStore | None = None,
        admission: AdmissionController | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> "SrefProxyService":
        cfg = config or default_settings
        return cls(
            cache=cache or CacheStore(max_entries=cfg.cache_max_entries, evict_fraction=cfg.cache_evict_fraction),
            admission=admission
            or AdmissionController(
                capacity=cfg.rate_limit_capacity,
                refill_per_second=cfg.rate_limit_refill_per_second,
                idle_seconds=cfg.rate_limit_idle_seconds,
                enabled=cfg.rate_limit_enabled,
            ),
            upstream=upstream
            or UpstreamClient(
                base_url=cfg.upstream_base_url,
                path=cfg.upstream_path,
                user_agent=cfg.upstream_user_agent,
                timeout=cfg.upstream_timeout,
            ),
            ttl_policy=build_ttl_policy(cfg),
            min_members=cfg.cache_min_members,
            max_attempts=cfg.upstream_max_attempts,
            retry_base_delay=cfg.upstream_retry_base_delay,
            coalesce=cfg.coalesce_upstream_fetches,
            sleep=sleep,
        )

    @property
    def inflight(self) -> int:
        return len(self._tasks)

    async def get_series(self, request: SrefRequest, client_id: str) -> ProxyResult:
        key = request.cache_key
        entry = self.cache.get_entry(key)
        if entry is not None:
            logger.info("cache hit %s", key)
            return ProxyResult(data=entry.result, cache_status="HIT", members=member_count(entry.result))

        if not self.admission.try_acquire(client_id):
            raise AdmissionDenied(client_id, self.admission.retry_after(client_id))

        logger.info("cache miss %s - fetching upstream", key)
        task = self._start_fetch(request)
        return await asyncio.shield(task)

    def _start_fetch(self, request: SrefRequest) -> asyncio.Task[ProxyResult]:
        key = request.cache_key
        if self._coalesce:
            existing = self._inflight.get(key)
            if existing is not None and not existing.done():
                logger.info("joining in-flight fetch for %s", key)
                return existing
        task = asyncio.get_running_loop().create_task(self._fetch_and_store(request), name=f"sref-fetch:{key}")
        self._tasks.add(task)
        if self._coalesce:
            self._inflight[key] = task
        task.add_done_callback(lambda finished: self._on_fetch_done(key, finished))
        return task

    def _on_fetch_done(self, key: str, task: asyncio.Task[ProxyResult]) -> None:
        self._tasks.discard(task)
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("upstream fetch for %s failed: %s", key, task.exception())

    async def _fetch_and_store(self, request: SrefRequest) -> ProxyResult:
        key = request.cache_key
        raw = await fetch_with_retry(
            self.upstream.fetch,
            request.station,
            request.run,
            request.parameter,
            request.date,
            max_attempts=self._max_attempts,
            base_delay=self._retry_base_delay,
            sleep=self._sleep,
        )
        processed = process_series(raw)
        members = member_count(processed)

        # Partial snapshots are served but never cached, so a later request can retry.
        if members >= self._min_members:
            ttl = self.ttl_policy.compute_ttl(request.run, self._now())
            self.cache.put(key, processed, ttl)
            logger.info("cached %s for %s minutes (%s members)", key, round(ttl.total_seconds() / 60), members)
            return ProxyResult(data=processed, cache_status="MISS", members=members, ttl_seconds=ttl.total_seconds())

        logger.info("not cached %s - incomplete data (%s members)", key, members)
        return ProxyResult(data=processed, cache_status="INCOMPLETE", members=members)

    async def drain(self) -> None:
        """Wait for outstanding fetches so their results reach the cache."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.upstream.close()


__all__ = [
    "CacheStatus",
    "ProxyResult",
    "SrefProxyService",
    "SrefRequest",
    "normalize_request",
]
