from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from farecheck.core.db import db_session
from farecheck.modules.cache.service import ComputationCache, get_cache
from farecheck.modules.trips.schemas import (
    TripDetailOut,
    TripDocumentOut,
    TripInsightsOut,
    TripOut,
)
from farecheck.modules.trips.service import get_trip, list_trip_documents, trip_insights

router = APIRouter(tags=["trips"])


@router.get("/trips/{trip_id}", response_model=TripDetailOut)
def get_trip_endpoint(
    trip_id: uuid.UUID,
    session: Session = Depends(db_session),
) -> TripDetailOut:
    trip = get_trip(session, trip_id=trip_id)
    documents = list_trip_documents(session, trip_id=trip.id)
    base = TripOut.model_validate(trip, from_attributes=True)
    return TripDetailOut(
        **base.model_dump(),
        documents=[TripDocumentOut.model_validate(d, from_attributes=True) for d in documents],
    )


@router.get("/trips/{trip_id}/insights", response_model=TripInsightsOut)
def get_trip_insights_endpoint(
    trip_id: uuid.UUID,
    session: Session = Depends(db_session),
    cache: ComputationCache = Depends(get_cache),
) -> TripInsightsOut:
    insights, result = trip_insights(session, trip_id=trip_id, cache=cache)
    return TripInsightsOut(
        trip_id=trip_id,
        version=insights["version"],
        cache_hit=result.reused,
        needs_attention=result.needs_attention,
        insights=insights,
    )
