from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from farecheck.modules.trips.models import TripState, VarianceAccuracy


class MergedField(BaseModel):
    value: Any
    confidence: float | None
    source_document_id: uuid.UUID


class TripDocumentOut(BaseModel):
    id: uuid.UUID
    filename: str
    classified_type: str | None
    classification_confidence: float | None
    merge_sequence: int | None
    uploaded_at: datetime
    merged_at: datetime | None


class TripOut(BaseModel):
    id: uuid.UUID
    trip_ref: str | None
    state: TripState
    version: int
    document_count: int
    merged_fields: dict[str, MergedField]
    started_at: datetime | None
    completed_at: datetime | None

    estimate_amount: Decimal | None
    settlement_amount: Decimal | None
    estimated_tip: Decimal | None
    actual_tip: Decimal | None
    distance_miles: Decimal | None
    duration_minutes: Decimal | None
    fuel_cost: Decimal | None
    net_profit: Decimal | None
    profit_per_mile: Decimal | None

    tip_variance: Decimal | None
    variance_accuracy: VarianceAccuracy | None
    needs_reconciliation: bool
    conflicts: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime


class TripDetailOut(TripOut):
    documents: list[TripDocumentOut] = []


class TripInsightsOut(BaseModel):
    trip_id: uuid.UUID
    version: int
    cache_hit: bool
    needs_attention: bool = False
    insights: dict[str, Any]
