from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict

from sref_proxy.services.cache_store import CacheEntry, CacheStore
from sref_proxy.services.scheduled_task import DebouncedTask

logger = logging.getLogger("sref_proxy.cache.snapshot")

SNAPSHOT_VERSION = 1


def _utc_now_iso() -> str:
    iso = datetime.now(timezone.utc).isoformat(timespec="seconds")
    return iso.replace("+00:00", "Z")


class CacheSnapshot:
    """Debounced JSON snapshot of a ``CacheStore`` so restarts keep warm entries."""

    def __init__(self, store: CacheStore, path: str | Path, *, debounce_seconds: float = 5.0) -> None:
        self._store = store
        self._path = Path(path)
        self._dirty = False
        self._task = DebouncedTask(self.save, delay=debounce_seconds, name="cache-snapshot")

    @property
    def path(self) -> Path:
        return self._path

    @property
    def pending(self) -> bool:
        return self._task.pending or self._dirty

    def attach(self) -> None:
        self._store.add_listener(self.mark_dirty)

    def mark_dirty(self) -> None:
        self._dirty = True
        try:
            self._task.schedule()
        except RuntimeError:
            # No running loop; the next flush() writes it.
            pass

    def load(self) -> int:
        if not self._path.exists():
            return 0
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load cache snapshot %s: %s", self._path, exc)
            return 0

        records = raw.get("entries") if isinstance(raw, dict) else None
        if not isinstance(records, dict):
            logger.warning("Cache snapshot %s has no entries table; ignoring", self._path)
            return 0
        entries = []
        for key, record in records.items():
            entry = CacheStore.entry_from_record(str(key), record)
            if entry is not None:
                entries.append(entry)
        restored = self._store.restore(entries)
        logger.info("Restored %s of %s cache entries from %s", restored, len(records), self._path)
        return restored

    async def save(self) -> None:
        self._dirty = False
        entries = self._store.snapshot()
        await asyncio.to_thread(self._write, entries)

    async def flush(self) -> None:
        if self._task.pending:
            await self._task.flush()
        elif self._dirty:
            await self.save()

    def cancel(self) -> None:
        self._task.cancel()

    def _write(self, entries: Dict[str, CacheEntry]) -> None:
        payload = {
            "version": SNAPSHOT_VERSION,
            "savedAt": _utc_now_iso(),
            "entries": {key: entry.to_record() for key, entry in entries.items()},
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Failed to create cache snapshot directory %s: %s", self._path.parent, exc)
            return
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(payload, separators=(",", ":"), ensure_ascii=True), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to save cache snapshot: %s", exc)
            return
        logger.info("Saved %s cache entries to %s", len(entries), self._path)


__all__ = ["CacheSnapshot", "SNAPSHOT_VERSION"]
