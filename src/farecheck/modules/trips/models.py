from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, Enum, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from farecheck.core.models import Base, Timestamped, UUIDPrimaryKey


class TripState(str, enum.Enum):
    INCOMPLETE = "INCOMPLETE"
    PARTIAL = "PARTIAL"
    COMPLETE = "COMPLETE"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]


_STATE_RANK = {TripState.INCOMPLETE: 0, TripState.PARTIAL: 1, TripState.COMPLETE: 2}


class VarianceAccuracy(str, enum.Enum):
    EXACT = "exact"
    OVER = "over"
    UNDER = "under"


class Trip(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "trips_trip"

    trip_ref: Mapped[str | None] = mapped_column(String(200), unique=True, nullable=True)
    state: Mapped[TripState] = mapped_column(
        Enum(TripState, native_enum=False), index=True, default=TripState.INCOMPLETE
    )
    # Bumped on every merge; cache keys over this trip include it.
    version: Mapped[int] = mapped_column(Integer, default=0)
    merged_fields: Mapped[dict] = mapped_column(JSON, default=dict)
    document_count: Mapped[int] = mapped_column(Integer, default=0)

    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    estimate_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    settlement_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    estimated_tip: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    actual_tip: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    distance_miles: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    duration_minutes: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    fuel_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    net_profit: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    profit_per_mile: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    tip_variance: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    variance_accuracy: Mapped[VarianceAccuracy | None] = mapped_column(
        Enum(VarianceAccuracy, native_enum=False), nullable=True
    )

    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    conflicts: Mapped[list] = mapped_column(JSON, default=list)
