from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from farecheck.core.config import settings
from farecheck.core.logging import get_logger, log_event, monotonic_ms
from farecheck.modules.cache.keys import CacheKey, canonical_json
from farecheck.modules.cache.store import CacheKeyCollision, CacheStore, SqlCacheStore

logger = get_logger(__name__)


class CacheComputationTimeout(RuntimeError):
    def __init__(self, key: str, operation: str, budget_seconds: float) -> None:
        super().__init__(
            f"Computation for {operation} ({key}) exceeded its {budget_seconds}s budget"
        )
        self.key = key
        self.operation = operation


@dataclass(frozen=True)
class CacheResult:
    value: Any
    hit: bool
    coalesced: bool
    compute_ms: int
    key: str
    # Set by callers that fell back to a fresh value after a key collision.
    needs_attention: bool = False

    @property
    def reused(self) -> bool:
        return self.hit or self.coalesced


class _InFlight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: CacheResult | None = None
        self.error: BaseException | None = None


class ComputationCache:
    """
    Content-addressed memo for expensive derived results.

    Concurrent callers of one key share a single in-flight computation and are
    released together with the same result or error. Computations run on a
    worker pool and are abandoned once they exceed ``budget_seconds`` so a hung
    computation never pins its waiters; the key is released for a later attempt.
    Values round-trip through canonical JSON, so every read of a key returns the
    same bytes.
    """

    def __init__(
        self, store: CacheStore, *, budget_seconds: float, max_workers: int = 4
    ) -> None:
        self._store = store
        self._budget_seconds = budget_seconds
        self._lock = threading.Lock()
        self._inflight: dict[str, _InFlight] = {}
        self._max_workers = max_workers
        self._executor = self._new_executor()
        # Timed-out futures still running on the current executor.
        self._abandoned: set[Future] = set()
        self.computations = 0
        self.abandoned = 0

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="farecheck-cache"
        )

    @property
    def store(self) -> CacheStore:
        return self._store

    def get_or_compute(
        self,
        key: CacheKey,
        compute_fn: Callable[[], Any],
        *,
        ttl_seconds: int | None = None,
    ) -> CacheResult:
        stored = self._store.get(key.digest)
        if stored is not None:
            log_event(logger, "cache.hit", operation=key.operation, cache_key=key.digest)
            return CacheResult(
                value=json.loads(stored.value_json),
                hit=True,
                coalesced=False,
                compute_ms=stored.compute_ms,
                key=key.digest,
            )

        with self._lock:
            flight = self._inflight.get(key.digest)
            leader = flight is None
            if leader:
                flight = _InFlight()
                self._inflight[key.digest] = flight

        if not leader:
            log_event(logger, "cache.coalesced", operation=key.operation, cache_key=key.digest)
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return replace(flight.result, coalesced=True)

        try:
            flight.result = self._compute_and_store(key, compute_fn, ttl_seconds)
            return flight.result
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._inflight.pop(key.digest, None)
            flight.done.set()

    def _compute_and_store(
        self, key: CacheKey, compute_fn: Callable[[], Any], ttl_seconds: int | None
    ) -> CacheResult:
        # Another leader may have finished between the first lookup and now.
        stored = self._store.get(key.digest)
        if stored is not None:
            return CacheResult(
                value=json.loads(stored.value_json),
                hit=True,
                coalesced=False,
                compute_ms=stored.compute_ms,
                key=key.digest,
            )

        start = time.monotonic()
        log_event(logger, "cache.compute.start", operation=key.operation, cache_key=key.digest)
        with self._lock:
            future = self._executor.submit(compute_fn)
        try:
            value = future.result(timeout=self._budget_seconds)
        except FuturesTimeout as e:
            if not future.cancel():
                self._abandon(future)
            log_event(
                logger,
                "cache.compute.timeout",
                level=logging.WARNING,
                operation=key.operation,
                cache_key=key.digest,
                budget_seconds=self._budget_seconds,
            )
            raise CacheComputationTimeout(key.digest, key.operation, self._budget_seconds) from e
        compute_ms = monotonic_ms(start)
        with self._lock:
            self.computations += 1

        expires_at = datetime.now(UTC) + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        try:
            stored = self._store.put(
                key, value_json=canonical_json(value), compute_ms=compute_ms, expires_at=expires_at
            )
        except CacheKeyCollision:
            log_event(
                logger,
                "cache.key_collision",
                level=logging.ERROR,
                operation=key.operation,
                cache_key=key.digest,
            )
            raise
        log_event(
            logger,
            "cache.compute.finish",
            operation=key.operation,
            cache_key=key.digest,
            compute_ms=compute_ms,
            ttl_seconds=ttl_seconds,
        )
        return CacheResult(
            value=json.loads(stored.value_json),
            hit=False,
            coalesced=False,
            compute_ms=compute_ms,
            key=key.digest,
        )

    def _abandon(self, future: Future) -> None:
        """
        Park a computation that overran its budget.

        A running thread cannot be stopped, so once abandoned work holds every
        worker the executor is swapped for a fresh one. The old threads finish
        on their own and their results are dropped.
        """
        with self._lock:
            self.abandoned += 1
            self._abandoned.add(future)
            replaced = len(self._abandoned) >= self._max_workers
            if replaced:
                stale = self._executor
                self._executor = self._new_executor()
                self._abandoned = set()
        future.add_done_callback(self._release_abandoned)
        if replaced:
            stale.shutdown(wait=False)
            log_event(
                logger,
                "cache.executor.replaced",
                level=logging.WARNING,
                abandoned_total=self.abandoned,
                max_workers=self._max_workers,
            )

    def _release_abandoned(self, future: Future) -> None:
        with self._lock:
            self._abandoned.discard(future)

    def invalidate_trip(self, trip_id: uuid.UUID) -> int:
        count = self._store.invalidate_trip(trip_id)
        log_event(logger, "cache.invalidate_trip", trip_id=str(trip_id), invalidated=count)
        return count


_cache: ComputationCache | None = None


def get_cache() -> ComputationCache:
    global _cache  # noqa: PLW0603
    if _cache is None:
        _cache = ComputationCache(
            SqlCacheStore(),
            budget_seconds=settings.cache_compute_budget_seconds,
            max_workers=settings.cache_max_workers,
        )
    return _cache
