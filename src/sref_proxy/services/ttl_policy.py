from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal, Protocol, Sequence

from sref_proxy.config import Settings, settings as default_settings


def _ensure_utc(timestamp: datetime | None = None) -> datetime:
    if timestamp is None:
        return datetime.now(timezone.utc)
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


class TtlPolicy(Protocol):
    name: str

    def compute_ttl(self, run: int | str, now: datetime | None = None) -> timedelta: ...


@dataclass(frozen=True, slots=True)
class RunScheduleTtl:
    """Expire a result when the run after it should have been published.

    The successor of ``run`` in the daily schedule is located at its next
    occurrence after ``now``; the publication delay is added and the time
    remaining is clamped to ``[minimum, maximum]``.
    """

    run_hours: Sequence[int] = (3, 9, 15, 21)
    ready_delay: timedelta = timedelta(hours=2)
    minimum: timedelta = timedelta(hours=1)
    maximum: timedelta = timedelta(hours=8)
    name: str = "schedule"

    def next_run_hour(self, run: int | str) -> int:
        hours = sorted(self.run_hours)
        run_hour = int(run)
        for hour in hours:
            if hour > run_hour:
                return hour
        return hours[0]

    def compute_ttl(self, run: int | str, now: datetime | None = None) -> timedelta:
        current = _ensure_utc(now)
        next_hour = self.next_run_hour(run)
        next_run = current.replace(hour=next_hour, minute=0, second=0, microsecond=0)
        if next_run <= current:
            next_run += timedelta(days=1)
        ttl = next_run + self.ready_delay - current
        return max(self.minimum, min(self.maximum, ttl))


@dataclass(frozen=True, slots=True)
class FixedTtl:
    ttl: timedelta = timedelta(days=14)
    name: str = "fixed"

    def compute_ttl(self, run: int | str, now: datetime | None = None) -> timedelta:
        return self.ttl


def build_ttl_policy(config: Settings | None = None) -> TtlPolicy:
    cfg = config or default_settings
    strategy: Literal["schedule", "fixed"] = cfg.cache_ttl_strategy
    if strategy == "fixed":
        return FixedTtl(ttl=timedelta(hours=cfg.cache_fixed_ttl_hours))
    return RunScheduleTtl(
        run_hours=tuple(cfg.run_hours),
        ready_delay=timedelta(hours=cfg.run_ready_delay_hours),
        minimum=timedelta(hours=cfg.cache_ttl_min_hours),
        maximum=timedelta(hours=cfg.cache_ttl_max_hours),
    )


__all__ = ["FixedTtl", "RunScheduleTtl", "TtlPolicy", "build_ttl_policy"]
