from __future__ import annotations

import threading
import time
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from farecheck.core.db import SessionLocal
from farecheck.modules.cache.keys import cache_key, canonical_json
from farecheck.modules.cache.models import CacheEntry, CacheEntryTrip
from farecheck.modules.cache.service import CacheComputationTimeout, ComputationCache
from farecheck.modules.cache.store import CacheKeyCollision, SqlCacheStore
from farecheck.modules.trips.models import Trip, TripState


def _trip(session) -> Trip:
    trip = Trip(state=TripState.PARTIAL, version=1)
    session.add(trip)
    session.commit()
    session.refresh(trip)
    return trip


def test_cache_key_is_canonical():
    trip_a, trip_b = uuid.uuid4(), uuid.uuid4()
    a = cache_key(
        "op",
        {"amount": Decimal("18.5"), "at": datetime(2026, 1, 1, tzinfo=UTC), "kind": "x"},
        trips=[(trip_a, 1), (trip_b, 2)],
    )
    b = cache_key(
        "op",
        {"kind": "x", "at": datetime(2026, 1, 1), "amount": Decimal("18.50")},
        trips=[(trip_b, 2), (trip_a, 1)],
    )
    assert a.digest == b.digest
    assert set(a.trip_ids) == {trip_a, trip_b}

    bumped = cache_key("op", {"kind": "x"}, trips=[(trip_a, 2)])
    assert bumped.digest != cache_key("op", {"kind": "x"}, trips=[(trip_a, 1)]).digest
    assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'


def test_second_call_is_a_hit_with_identical_bytes(cache):
    calls = []

    def compute():
        calls.append(1)
        return {"total": Decimal("42.10"), "rows": [3, 1, 2]}

    key = cache_key("demo", {"x": 1})
    first = cache.get_or_compute(key, compute)
    second = cache.get_or_compute(key, compute)

    assert not first.hit
    assert second.hit and second.reused
    assert first.value == second.value == {"total": "42.1", "rows": [3, 1, 2]}
    assert canonical_json(first.value) == canonical_json(second.value)
    assert len(calls) == 1
    assert cache.computations == 1


def test_concurrent_first_requests_share_one_computation(cache):
    started = threading.Event()
    release = threading.Event()
    calls = []

    def slow():
        calls.append(1)
        started.set()
        release.wait(5)
        return {"answer": 42}

    key = cache_key("slow", {})
    results = []
    errors = []

    def caller():
        try:
            results.append(cache.get_or_compute(key, slow))
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=caller) for _ in range(5)]
    threads[0].start()
    assert started.wait(5)
    for t in threads[1:]:
        t.start()
    time.sleep(0.2)
    release.set()
    for t in threads:
        t.join()

    assert not errors
    assert len(calls) == 1
    assert all(r.value == {"answer": 42} for r in results)
    assert sum(1 for r in results if not r.reused) == 1
    with SessionLocal() as session:
        assert session.scalar(select(func.count()).select_from(CacheEntry)) == 1


def test_computation_over_budget_is_abandoned_and_key_released():
    cache = ComputationCache(SqlCacheStore(), budget_seconds=0.2)
    release = threading.Event()
    key = cache_key("hung", {})

    with pytest.raises(CacheComputationTimeout):
        cache.get_or_compute(key, lambda: release.wait(5) and {"late": True})
    release.set()

    result = cache.get_or_compute(key, lambda: {"retry": True})
    assert result.value == {"retry": True}
    assert not result.hit


def test_hung_computations_do_not_starve_other_keys():
    cache = ComputationCache(SqlCacheStore(), budget_seconds=0.2, max_workers=2)
    release = threading.Event()
    try:
        for name in ("hung-a", "hung-b"):
            with pytest.raises(CacheComputationTimeout):
                cache.get_or_compute(
                    cache_key(name, {}), lambda: release.wait(5) and {"late": True}
                )

        result = cache.get_or_compute(cache_key("fast", {}), lambda: {"ok": 1})
        assert result.value == {"ok": 1}
        assert not result.hit
        assert cache.abandoned == 2
    finally:
        release.set()


def test_errors_are_not_cached(cache):
    key = cache_key("flaky", {})

    def boom():
        raise ValueError("nope")

    with pytest.raises(ValueError):
        cache.get_or_compute(key, boom)
    assert cache.get_or_compute(key, lambda: {"ok": 1}).value == {"ok": 1}


def test_ttl_expiry_recomputes_in_place(cache):
    key = cache_key("windowed", {})
    cache.get_or_compute(key, lambda: {"n": 1}, ttl_seconds=60)

    with SessionLocal() as session:
        entry = session.scalar(select(CacheEntry).where(CacheEntry.key == key.digest))
        entry.expires_at = datetime.now(UTC) - timedelta(seconds=1)
        session.commit()

    result = cache.get_or_compute(key, lambda: {"n": 2}, ttl_seconds=60)
    assert not result.hit
    assert result.value == {"n": 2}
    with SessionLocal() as session:
        assert session.scalar(select(func.count()).select_from(CacheEntry)) == 1


def test_different_value_under_live_key_is_a_collision(cache):
    key = cache_key("nondeterministic", {})
    cache.store.put(key, value_json='{"n":1}', compute_ms=1, expires_at=None)

    with pytest.raises(CacheKeyCollision):
        cache.store.put(key, value_json='{"n":2}', compute_ms=1, expires_at=None)

    # Same bytes again is not a collision.
    stored = cache.store.put(key, value_json='{"n":1}', compute_ms=5, expires_at=None)
    assert stored.value_json == '{"n":1}'


def test_invalidate_trip_marks_only_linked_entries(cache):
    with SessionLocal() as session:
        trip, other = _trip(session), _trip(session)
        trip_id, other_id = trip.id, other.id

    cache.get_or_compute(cache_key("a", {}, trips=[(trip_id, 1)]), lambda: {"a": 1})
    cache.get_or_compute(cache_key("b", {}, trips=[(trip_id, 1), (other_id, 1)]), lambda: 2)
    untouched = cache_key("c", {}, trips=[(other_id, 1)])
    cache.get_or_compute(untouched, lambda: 3)

    assert cache.invalidate_trip(trip_id) == 2
    assert cache.invalidate_trip(trip_id) == 0
    assert cache.get_or_compute(untouched, lambda: 99).hit

    with SessionLocal() as session:
        links = session.scalar(
            select(func.count())
            .select_from(CacheEntryTrip)
            .where(CacheEntryTrip.trip_id == trip_id)
        )
        assert links == 2
