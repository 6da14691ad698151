from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from farecheck.core.db import SessionLocal
from farecheck.core.models import as_utc
from farecheck.modules.cache.keys import CacheKey, sha256_hex
from farecheck.modules.cache.models import CacheEntry, CacheEntryTrip


class CacheKeyCollision(RuntimeError):
    def __init__(self, key: str, operation: str) -> None:
        super().__init__(f"Cache key {key} ({operation}) already holds a different value")
        self.key = key
        self.operation = operation


@dataclass(frozen=True)
class StoredValue:
    key: str
    value_json: str
    compute_ms: int
    created_at: datetime


class CacheStore:
    def get(self, key: str) -> StoredValue | None:  # pragma: no cover
        raise NotImplementedError

    def put(
        self, key: CacheKey, *, value_json: str, compute_ms: int, expires_at: datetime | None
    ) -> StoredValue:  # pragma: no cover
        raise NotImplementedError

    def invalidate_trip(self, trip_id: uuid.UUID) -> int:  # pragma: no cover
        raise NotImplementedError


def _is_live(entry: CacheEntry, now: datetime) -> bool:
    if entry.invalidated_at is not None:
        return False
    expires_at = as_utc(entry.expires_at)
    return expires_at is None or expires_at > now


def _stored(entry: CacheEntry) -> StoredValue:
    return StoredValue(
        key=entry.key,
        value_json=entry.value_json,
        compute_ms=entry.compute_ms,
        created_at=as_utc(entry.created_at),
    )


class SqlCacheStore(CacheStore):
    """
    Cache entries in the application database.

    Each call opens its own short session: computations and their callers run
    on different threads and must not share a Session.
    """

    def __init__(self, session_factory: sessionmaker[Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def get(self, key: str) -> StoredValue | None:
        with self._session_factory() as session:
            entry = session.scalar(select(CacheEntry).where(CacheEntry.key == key))
            if not entry or not _is_live(entry, datetime.now(UTC)):
                return None
            return _stored(entry)

    def put(
        self, key: CacheKey, *, value_json: str, compute_ms: int, expires_at: datetime | None
    ) -> StoredValue:
        digest = sha256_hex(value_json)
        now = datetime.now(UTC)
        with self._session_factory() as session:
            entry = session.scalar(select(CacheEntry).where(CacheEntry.key == key.digest))
            if entry is None:
                entry = CacheEntry(
                    key=key.digest,
                    operation=key.operation,
                    value_json=value_json,
                    value_digest=digest,
                    compute_ms=compute_ms,
                    expires_at=expires_at,
                )
                try:
                    with session.begin_nested():
                        session.add(entry)
                        session.flush()
                except IntegrityError:
                    entry = session.scalar(select(CacheEntry).where(CacheEntry.key == key.digest))
                    if entry is None:
                        raise
                    return self._settle_existing(session, entry, key, digest, now)
                self._link_trips(session, key)
                session.commit()
                session.refresh(entry)
                return _stored(entry)

            if _is_live(entry, now):
                return self._settle_existing(session, entry, key, digest, now)

            # Expired or invalidated: the key's inputs were recomputed, replace in place.
            entry.value_json = value_json
            entry.value_digest = digest
            entry.compute_ms = compute_ms
            entry.expires_at = expires_at
            entry.invalidated_at = None
            entry.created_at = now
            session.add(entry)
            session.execute(delete(CacheEntryTrip).where(CacheEntryTrip.cache_key == key.digest))
            self._link_trips(session, key)
            session.commit()
            session.refresh(entry)
            return _stored(entry)

    def _settle_existing(
        self, session: Session, entry: CacheEntry, key: CacheKey, digest: str, now: datetime
    ) -> StoredValue:
        if _is_live(entry, now) and entry.value_digest != digest:
            raise CacheKeyCollision(key.digest, key.operation)
        return _stored(entry)

    def _link_trips(self, session: Session, key: CacheKey) -> None:
        for trip_id in key.trip_ids:
            session.add(CacheEntryTrip(cache_key=key.digest, trip_id=trip_id))
        session.flush()

    def invalidate_trip(self, trip_id: uuid.UUID) -> int:
        with self._session_factory() as session:
            keys = select(CacheEntryTrip.cache_key).where(CacheEntryTrip.trip_id == trip_id)
            result = session.execute(
                update(CacheEntry)
                .where(CacheEntry.key.in_(keys), CacheEntry.invalidated_at.is_(None))
                .values(invalidated_at=datetime.now(UTC))
            )
            session.commit()
            return int(result.rowcount or 0)
