from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from farecheck.core.models import Base, Timestamped, UUIDPrimaryKey


class AnalysisKind(str, enum.Enum):
    SINGLE_WINDOW = "SINGLE_WINDOW"
    COMPARISON = "COMPARISON"


class SessionStatus(str, enum.Enum):
    COMPLETED = "COMPLETED"
    NEEDS_ATTENTION = "NEEDS_ATTENTION"


class ReanalysisSession(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "analysis_session"

    kind: Mapped[AnalysisKind] = mapped_column(Enum(AnalysisKind, native_enum=False), index=True)
    range_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    range_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    trip_ids: Mapped[list] = mapped_column(JSON, default=list)

    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, native_enum=False), index=True
    )
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    cache_key: Mapped[str] = mapped_column(String(64), index=True)
    cache_hit: Mapped[bool] = mapped_column(Boolean, default=False)
    # Session whose computation produced the cached payload this one reused.
    source_session_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("analysis_session.id"), nullable=True
    )
    execution_ms: Mapped[int] = mapped_column(Integer, default=0)
