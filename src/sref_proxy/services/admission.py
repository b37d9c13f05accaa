from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict

logger = logging.getLogger("sref_proxy.admission")

Clock = Callable[[], float]


@dataclass(slots=True)
class TokenBucket:
    tokens: float
    last_refill_at: float
    last_seen_at: float


class AdmissionController:
    """Per-client token buckets gating upstream fetches on cache misses.

    New clients start with a full bucket. Refill adds whole tokens only.

    Tokens earned are ``floor(elapsed * rate)`` rather than
    ``floor(elapsed_seconds) * rate``, and ``last_refill_at`` advances only by
    the time those tokens cost instead of jumping to ``now``. The leftover
    fraction carries over to the next check, so fractional rates (say 0.5/s)
    and clients polling more often than once per token still refill at the
    configured rate. Once the bucket is full the refill time resets to
    ``now`` so idle time is not banked past capacity.
    """

    def __init__(
        self,
        *,
        capacity: int = 50,
        refill_per_second: float = 1.0,
        idle_seconds: float = 3600.0,
        enabled: bool = True,
        clock: Clock = time.monotonic,
    ) -> None:
        self._capacity = max(1, int(capacity))
        self._rate = float(refill_per_second)
        self._idle_seconds = max(0.0, float(idle_seconds))
        self._enabled = enabled
        self._clock = clock
        self._lock = RLock()
        self._buckets: Dict[str, TokenBucket] = {}
        self._last_prune = clock()
        self.denied = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _refill_locked(self, bucket: TokenBucket, now: float) -> None:
        elapsed = max(0.0, now - bucket.last_refill_at)
        whole = math.floor(elapsed * self._rate)
        if whole <= 0:
            return
        bucket.tokens = min(float(self._capacity), bucket.tokens + whole)
        if bucket.tokens >= self._capacity:
            bucket.last_refill_at = now
        else:
            bucket.last_refill_at += whole / self._rate

    def try_acquire(self, client_id: str) -> bool:
        if not self._enabled:
            return True
        now = self._clock()
        with self._lock:
            self._maybe_prune_locked(now)
            bucket = self._buckets.get(client_id)
            if bucket is None:
                bucket = TokenBucket(tokens=float(self._capacity), last_refill_at=now, last_seen_at=now)
                self._buckets[client_id] = bucket
            else:
                self._refill_locked(bucket, now)
                bucket.last_seen_at = now
            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return True
            self.denied += 1
        logger.warning("admission denied for %s", client_id)
        return False

    def tokens(self, client_id: str) -> float:
        """Current token count after refill; unknown clients report full capacity."""
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(client_id)
            if bucket is None:
                return float(self._capacity)
            self._refill_locked(bucket, now)
            return bucket.tokens

    def retry_after(self, client_id: str) -> float:
        """Seconds until the client's next token becomes available."""
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(client_id)
            if bucket is None or bucket.tokens >= 1:
                return 0.0
            return max(0.0, bucket.last_refill_at + 1.0 / self._rate - now)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self.denied = 0

    def _maybe_prune_locked(self, now: float) -> None:
        if self._idle_seconds <= 0 or now - self._last_prune < self._idle_seconds:
            return
        self._last_prune = now
        stale = []
        for client_id, bucket in self._buckets.items():
            if now - bucket.last_seen_at < self._idle_seconds:
                continue
            self._refill_locked(bucket, now)
            # A full bucket carries no state a fresh one would not.
            if bucket.tokens >= self._capacity:
                stale.append(client_id)
        for client_id in stale:
            del self._buckets[client_id]
        if stale:
            logger.info("pruned %s idle admission buckets", len(stale))


__all__ = ["AdmissionController", "TokenBucket"]
