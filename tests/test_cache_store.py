from __future__ import annotations

from datetime import timedelta

from sref_proxy.services.cache_store import CacheStore, make_cache_key


def _result(label: str = "M00") -> dict:
    return {label: [{"x": 0, "y": 1.0}], "Mean": [{"x": 0, "y": 1.0}]}


def test_cache_key_is_case_insensitive_for_station() -> None:
    assert make_cache_key("2025-01-15", "09", "jfk", "3hrly-TMP") == "2025-01-15_09_JFK_3hrly-TMP"
    assert make_cache_key("2025-01-15", "09", "JFK", "3hrly-TMP") == make_cache_key("2025-01-15", "09", "jFk", "3hrly-TMP")


def test_put_then_get(clock) -> None:
    store = CacheStore(clock=clock)

    entry = store.put("k", _result(), timedelta(hours=2))

    assert store.get("k") == _result()
    assert entry.inserted_at == clock.now
    assert entry.expires_at == clock.now + 7200
    assert store.stats["hits"] == 1


def test_lazy_expiry_removes_entry(clock) -> None:
    store = CacheStore(clock=clock)
    store.put("k", _result(), 60)
    store.put("other", _result(), 3600)

    clock.advance(60)
    assert store.get("k") is not None  # expiry is strict: now must pass expiresAt

    clock.advance(1)
    assert len(store) == 2
    assert store.get("k") is None
    assert len(store) == 1
    assert "k" not in store
    assert store.stats["expired"] == 1


def test_put_replaces_entry_wholesale(clock) -> None:
    store = CacheStore(clock=clock)
    store.put("k", _result("A"), 60)
    clock.advance(10)

    entry = store.put("k", _result("B"), 120)

    assert store.get("k") == _result("B")
    assert entry.inserted_at == clock.now
    assert len(store) == 1


def test_eviction_removes_oldest_tenth(clock) -> None:
    store = CacheStore(max_entries=20, clock=clock)
    for index in range(20):
        store.put(f"k{index}", _result(), 3600)
        clock.advance(1)

    store.put("new", _result(), 3600)

    assert len(store) == 19
    assert "k0" not in store and "k1" not in store
    assert "k2" in store
    assert "new" in store
    assert store.stats["evictions"] == 2


def test_size_never_exceeds_bound(clock) -> None:
    store = CacheStore(max_entries=50, clock=clock)
    for index in range(500):
        store.put(f"k{index}", _result(), 3600)
        clock.advance(0.5)
        assert len(store) <= 50
    assert "k499" in store


def test_replacing_at_capacity_does_not_evict(clock) -> None:
    store = CacheStore(max_entries=3, clock=clock)
    for key in ("a", "b", "c"):
        store.put(key, _result(), 3600)

    store.put("b", _result("B"), 3600)

    assert len(store) == 3
    assert store.stats["evictions"] == 0


def test_eviction_prefers_insertion_order_on_ties(clock) -> None:
    store = CacheStore(max_entries=2, evict_fraction=0.5, clock=clock)
    store.put("first", _result(), 3600)
    store.put("second", _result(), 3600)

    store.put("third", _result(), 3600)

    assert "first" not in store
    assert "second" in store and "third" in store


def test_inventory_drops_expired_and_reports_remaining(clock) -> None:
    store = CacheStore(clock=clock)
    store.put("short", _result(), 30)
    clock.advance(1)
    store.put("long", _result(), 7200)
    clock.advance(60)

    payload = store.inventory_payload()

    assert payload["entries"] == 1
    assert payload["keys"][0]["key"] == "long"
    assert payload["keys"][0]["expiresIn"] == "119 minutes"
    assert payload["keys"][0]["expiresInSeconds"] == 7140
    assert payload["keys"][0]["cachedAt"].endswith("Z")
    assert "short" not in store


def test_listeners_fire_on_mutations(clock) -> None:
    store = CacheStore(clock=clock)
    events: list[str] = []
    store.add_listener(lambda: events.append("mutated"))

    store.put("k", _result(), 10)
    store.get("k")
    clock.advance(11)
    store.get("k")
    store.evict("missing")

    assert events == ["mutated", "mutated"]


def test_restore_skips_expired_entries(clock) -> None:
    source = CacheStore(clock=clock)
    source.put("stale", _result(), 10)
    source.put("fresh", _result(), 3600)
    entries = source.snapshot().values()

    clock.advance(60)
    target = CacheStore(clock=clock)
    restored = target.restore(entries)

    assert restored == 1
    assert "fresh" in target
    assert "stale" not in target


def test_entry_from_record_rejects_malformed_records() -> None:
    assert CacheStore.entry_from_record("k", {"result": [], "insertedAt": 1, "expiresAt": 2}) is None
    assert CacheStore.entry_from_record("k", {"result": {}, "insertedAt": "x", "expiresAt": 2}) is None
    assert CacheStore.entry_from_record("k", "junk") is None
    entry = CacheStore.entry_from_record("k", {"result": {}, "insertedAt": 1, "expiresAt": 2})
    assert entry is not None and entry.expires_at == 2.0
