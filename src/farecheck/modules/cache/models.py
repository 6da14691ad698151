from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from farecheck.core.models import Base, Timestamped, UUIDPrimaryKey


class CacheEntry(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "cache_entry"

    key: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    operation: Mapped[str] = mapped_column(String(100), index=True)
    # Canonical JSON; every read decodes these exact bytes.
    value_json: Mapped[str] = mapped_column(Text)
    value_digest: Mapped[str] = mapped_column(String(64))
    compute_ms: Mapped[int] = mapped_column(Integer, default=0)

    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invalidated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )


class CacheEntryTrip(UUIDPrimaryKey, Base):
    __tablename__ = "cache_entry_trip"
    __table_args__ = (UniqueConstraint("cache_key", "trip_id", name="uq_cache_entry_trip"),)

    cache_key: Mapped[str] = mapped_column(String(64), index=True)
    trip_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("trips_trip.id"), index=True
    )
