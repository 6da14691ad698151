from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from farecheck.core.models import Base, Timestamped, UUIDPrimaryKey


class ReviewTaskStatus(str, enum.Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class ReviewTaskType(str, enum.Enum):
    AMBIGUOUS_CLASSIFICATION = "AMBIGUOUS_CLASSIFICATION"
    MERGE_CONFLICT = "MERGE_CONFLICT"
    CACHE_KEY_COLLISION = "CACHE_KEY_COLLISION"


class ReviewTask(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "review_task"

    type: Mapped[ReviewTaskType] = mapped_column(
        Enum(ReviewTaskType, native_enum=False), index=True
    )
    # Stable identity of the thing under review (document id, trip id, cache key).
    subject: Mapped[str] = mapped_column(String(100), index=True)
    trip_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("trips_trip.id"), nullable=True, index=True
    )
    document_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("uploads_document.id"), nullable=True
    )

    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ReviewTaskStatus] = mapped_column(
        Enum(ReviewTaskStatus, native_enum=False), index=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
