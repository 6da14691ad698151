from __future__ import annotations

import time
from datetime import UTC, datetime

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from farecheck.core.config import settings
from farecheck.core.locks import KeyedLocks
from farecheck.core.logging import get_logger, log_event, monotonic_ms
from farecheck.core.models import as_utc
from farecheck.modules.analysis.aggregates import analysis_snapshot, compute_aggregates
from farecheck.modules.analysis.models import AnalysisKind, ReanalysisSession, SessionStatus
from farecheck.modules.cache.keys import CacheKey, cache_key
from farecheck.modules.cache.service import ComputationCache
from farecheck.modules.cache.store import CacheKeyCollision
from farecheck.modules.review.models import ReviewTaskStatus, ReviewTaskType
from farecheck.modules.review.service import sync_review_task
from farecheck.modules.trips.models import Trip

logger = get_logger(__name__)

ANALYSIS_OPERATION = "analysis.aggregate"
AGGREGATE_SCHEMA_VERSION = 1

_analysis_locks = KeyedLocks()


def analyze(
    session: Session,
    *,
    kind: AnalysisKind,
    range_start: datetime,
    range_end: datetime,
    cache: ComputationCache,
    now: datetime | None = None,
) -> ReanalysisSession:
    """
    Aggregate trips that started in [range_start, range_end) and record the run.

    The key covers the kind, the range and the (id, version) of every trip in
    range, so unchanged data reuses the earlier computation. A window that is
    still open also gets a TTL, because trips can start inside it later. Every
    call appends a session; reused results point at the session that computed
    them.
    """
    start = time.monotonic()
    now = now or datetime.now(UTC)
    range_start = as_utc(range_start)
    range_end = as_utc(range_end)
    if range_end <= range_start:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="range_end must be after range_start",
        )

    trips = list(
        session.scalars(
            select(Trip)
            .where(Trip.started_at >= range_start, Trip.started_at < range_end)
            .order_by(Trip.started_at, Trip.id)
        )
    )
    snapshots = [analysis_snapshot(trip) for trip in trips]
    trip_ids = [str(trip.id) for trip in trips]
    key = cache_key(
        ANALYSIS_OPERATION,
        {
            "kind": kind.value,
            "range_start": range_start,
            "range_end": range_end,
            "schema": AGGREGATE_SCHEMA_VERSION,
        },
        trips=[(trip.id, trip.version) for trip in trips],
    )
    ttl_seconds = settings.analysis_open_window_ttl_seconds if range_end > now else None

    # Runs of one key are recorded one at a time, so a reused result always
    # finds the committed session that computed it.
    with _analysis_locks.hold(key.digest):
        return _run_and_record(
            session,
            kind=kind,
            range_start=range_start,
            range_end=range_end,
            snapshots=snapshots,
            trip_ids=trip_ids,
            key=key,
            ttl_seconds=ttl_seconds,
            cache=cache,
            start=start,
        )


def _run_and_record(
    session: Session,
    *,
    kind: AnalysisKind,
    range_start: datetime,
    range_end: datetime,
    snapshots: list[dict],
    trip_ids: list[str],
    key: CacheKey,
    ttl_seconds: int | None,
    cache: ComputationCache,
    start: float,
) -> ReanalysisSession:
    try:
        result = cache.get_or_compute(
            key,
            lambda: compute_aggregates(
                kind=kind.value,
                range_start=range_start,
                range_end=range_end,
                snapshots=snapshots,
            ),
            ttl_seconds=ttl_seconds,
        )
    except CacheKeyCollision:
        record = ReanalysisSession(
            kind=kind,
            range_start=range_start,
            range_end=range_end,
            trip_ids=trip_ids,
            status=SessionStatus.NEEDS_ATTENTION,
            payload=None,
            cache_key=key.digest,
            cache_hit=False,
            execution_ms=monotonic_ms(start),
        )
        session.add(record)
        sync_review_task(
            session,
            task_type=ReviewTaskType.CACHE_KEY_COLLISION,
            subject=key.digest,
            status=ReviewTaskStatus.OPEN,
            title=f"Non-reproducible {kind.value.lower()} analysis",
            description=(
                f"Recomputing {range_start.isoformat()} to {range_end.isoformat()} over "
                f"{len(trip_ids)} trips produced a different result than the stored one."
            ),
        )
        session.commit()
        session.refresh(record)
        log_event(
            logger,
            "analysis.needs_attention",
            session_id=str(record.id),
            cache_key=key.digest,
            kind=kind.value,
        )
        return record

    source_session_id = None
    if result.reused:
        source_session_id = session.scalar(
            select(ReanalysisSession.id)
            .where(
                ReanalysisSession.cache_key == key.digest,
                ReanalysisSession.cache_hit.is_(False),
                ReanalysisSession.status == SessionStatus.COMPLETED,
            )
            .order_by(ReanalysisSession.created_at.desc())
            .limit(1)
        )

    record = ReanalysisSession(
        kind=kind,
        range_start=range_start,
        range_end=range_end,
        trip_ids=trip_ids,
        status=SessionStatus.COMPLETED,
        payload=result.value,
        cache_key=key.digest,
        cache_hit=result.reused,
        source_session_id=source_session_id,
        execution_ms=monotonic_ms(start),
    )
    session.add(record)
    session.commit()
    session.refresh(record)
    log_event(
        logger,
        "analysis.session.recorded",
        session_id=str(record.id),
        kind=kind.value,
        trip_count=len(trip_ids),
        cache_key=key.digest,
        cache_hit=result.reused,
        source_session_id=str(source_session_id) if source_session_id else None,
        execution_ms=record.execution_ms,
    )
    return record


def list_sessions(session: Session, *, limit: int = 50) -> list[ReanalysisSession]:
    return list(
        session.scalars(
            select(ReanalysisSession).order_by(ReanalysisSession.created_at.desc()).limit(limit)
        )
    )


def get_session(session: Session, *, session_id) -> ReanalysisSession:
    record = session.scalar(select(ReanalysisSession).where(ReanalysisSession.id == session_id))
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return record
