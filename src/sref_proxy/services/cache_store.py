from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from sref_proxy.services.series import ProcessedResult

logger = logging.getLogger("sref_proxy.cache")

Clock = Callable[[], float]
MutationListener = Callable[[], None]


def make_cache_key(date: str, run: str, station: str, parameter: str) -> str:
    """Fingerprint for one upstream resource; station is case-insensitive."""
    return f"{date}_{run}_{station.upper()}_{parameter}"


def _isoformat(epoch: float) -> str:
    iso = datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat(timespec="milliseconds")
    if iso.endswith("+00:00"):
        return iso[:-6] + "Z"
    return iso


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """Immutable cached result; replaced wholesale, never edited."""

    key: str
    result: ProcessedResult
    inserted_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def remaining_seconds(self, now: float) -> float:
        return max(0.0, self.expires_at - now)

    def to_payload(self, now: float) -> Dict[str, Any]:
        remaining = self.remaining_seconds(now)
        return {
            "key": self.key,
            "cachedAt": _isoformat(self.inserted_at),
            "expiresIn": f"{round(remaining / 60)} minutes",
            "expiresInSeconds": round(remaining),
        }

    def to_record(self) -> Dict[str, Any]:
        return {"result": self.result, "insertedAt": self.inserted_at, "expiresAt": self.expires_at}


class CacheStore:
    """Thread-safe TTL cache of processed plume results, bounded by entry count.

    Expired entries are dropped when read. When an insert would take the store
    to ``max_entries``, the oldest ``evict_fraction`` of entries (by insertion
    time) are evicted first.
    """

    def __init__(
        self,
        *,
        max_entries: int = 1000,
        evict_fraction: float = 0.1,
        clock: Clock = time.time,
    ) -> None:
        self._max_entries = max(1, int(max_entries))
        self._evict_fraction = min(1.0, max(evict_fraction, 0.0))
        self._clock = clock
        self._lock = RLock()
        self._entries: Dict[str, CacheEntry] = {}
        self._listeners: List[MutationListener] = []
        self.stats = {"hits": 0, "misses": 0, "expired": 0, "evictions": 0}

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def add_listener(self, listener: MutationListener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in self._listeners:
            listener()

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats["misses"] += 1
                return None
            if entry.is_expired(now):
                del self._entries[key]
                self.stats["expired"] += 1
                self.stats["misses"] += 1
                expired = True
            else:
                self.stats["hits"] += 1
                expired = False
        if expired:
            logger.info("cache entry expired %s", key)
            self._notify()
            return None
        return entry

    def get(self, key: str) -> Optional[ProcessedResult]:
        entry = self.get_entry(key)
        return entry.result if entry is not None else None

    def put(self, key: str, result: ProcessedResult, ttl: timedelta | float) -> CacheEntry:
        ttl_seconds = ttl.total_seconds() if isinstance(ttl, timedelta) else float(ttl)
        now = self._clock()
        entry = CacheEntry(key=key, result=result, inserted_at=now, expires_at=now + ttl_seconds)
        with self._lock:
            replaced = self._entries.pop(key, None) is not None
            if not replaced and len(self._entries) >= self._max_entries:
                self._evict_oldest_locked()
            self._entries[key] = entry
        self._notify()
        return entry

    def evict(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            self._notify()
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            for name in self.stats:
                self.stats[name] = 0
        self._notify()

    def _evict_oldest_locked(self) -> None:
        count = max(1, math.ceil(len(self._entries) * self._evict_fraction))
        # sorted() is stable, so equal timestamps fall back to insertion order.
        ordered = sorted(self._entries.values(), key=lambda item: item.inserted_at)
        for entry in ordered[:count]:
            self._entries.pop(entry.key, None)
        self.stats["evictions"] += count
        logger.info("cache at capacity (%s); evicted %s oldest entries", self._max_entries, count)

    def inventory(self) -> List[CacheEntry]:
        """Unexpired entries, oldest first; expired entries met on the way are removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self.stats["expired"] += len(expired)
            live = sorted(self._entries.values(), key=lambda item: item.inserted_at)
        if expired:
            self._notify()
        return live

    def inventory_payload(self) -> Dict[str, Any]:
        entries = self.inventory()
        now = self._clock()
        return {"entries": len(entries), "keys": [entry.to_payload(now) for entry in entries]}

    def snapshot(self) -> Dict[str, CacheEntry]:
        """Point-in-time copy for serialisation outside the lock."""
        with self._lock:
            return dict(self._entries)

    def restore(self, entries: Iterable[CacheEntry]) -> int:
        """Load entries from durable storage, skipping expired ones."""
        now = self._clock()
        fresh = sorted((entry for entry in entries if not entry.is_expired(now)), key=lambda item: item.inserted_at)
        # Keep the newest entries if the snapshot is larger than the bound.
        fresh = fresh[-self._max_entries :]
        with self._lock:
            for entry in fresh:
                self._entries[entry.key] = entry
        return len(fresh)

    @staticmethod
    def entry_from_record(key: str, record: Mapping[str, Any]) -> Optional[CacheEntry]:
        if not isinstance(record, Mapping):
            return None
        result = record.get("result")
        inserted_at = record.get("insertedAt")
        expires_at = record.get("expiresAt")
        if not isinstance(result, dict):
            return None
        if not isinstance(inserted_at, (int, float)) or not isinstance(expires_at, (int, float)):
            return None
        return CacheEntry(key=key, result=result, inserted_at=float(inserted_at), expires_at=float(expires_at))


__all__ = ["CacheEntry", "CacheStore", "make_cache_key"]
