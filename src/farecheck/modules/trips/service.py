from __future__ import annotations

import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from farecheck.core.logging import get_logger, log_event
from farecheck.modules.cache.keys import cache_key
from farecheck.modules.cache.service import CacheResult, ComputationCache
from farecheck.modules.cache.store import CacheKeyCollision
from farecheck.modules.review.models import ReviewTaskStatus, ReviewTaskType
from farecheck.modules.review.service import sync_review_task
from farecheck.modules.trips.insights import build_insights, trip_snapshot
from farecheck.modules.trips.models import Trip
from farecheck.modules.uploads.models import UploadedDocument

logger = get_logger(__name__)

INSIGHTS_OPERATION = "trip.insights"


def get_trip(session: Session, *, trip_id: uuid.UUID) -> Trip:
    trip = session.scalar(select(Trip).where(Trip.id == trip_id))
    if not trip:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")
    return trip


def list_trip_documents(session: Session, *, trip_id: uuid.UUID) -> list[UploadedDocument]:
    return list(
        session.scalars(
            select(UploadedDocument)
            .where(UploadedDocument.trip_id == trip_id)
            .order_by(UploadedDocument.merge_sequence)
        )
    )


def trip_insights(
    session: Session, *, trip_id: uuid.UUID, cache: ComputationCache
) -> tuple[dict[str, Any], CacheResult]:
    """
    Cached insights for the trip's current version.

    A key collision is not resolved by overwrite: the caller gets a freshly
    built value marked ``needs_attention`` and a review task is opened.
    """
    trip = get_trip(session, trip_id=trip_id)
    snapshot = trip_snapshot(trip)
    key = cache_key(INSIGHTS_OPERATION, {"schema": 1}, trips=[(trip.id, trip.version)])
    try:
        result = cache.get_or_compute(key, lambda: build_insights(snapshot))
    except CacheKeyCollision:
        sync_review_task(
            session,
            task_type=ReviewTaskType.CACHE_KEY_COLLISION,
            subject=key.digest,
            status=ReviewTaskStatus.OPEN,
            title="Non-reproducible trip insights",
            description=(
                f"Insights for trip version {trip.version} differ from the cached result."
            ),
            trip_id=trip.id,
        )
        session.commit()
        log_event(
            logger,
            "trip.insights.needs_attention",
            trip_id=str(trip_id),
            version=snapshot["version"],
            cache_key=key.digest,
        )
        value = build_insights(snapshot)
        return value, CacheResult(
            value=value,
            hit=False,
            coalesced=False,
            compute_ms=0,
            key=key.digest,
            needs_attention=True,
        )
    return result.value, result
