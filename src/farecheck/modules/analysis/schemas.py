from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from farecheck.modules.analysis.models import AnalysisKind, SessionStatus


class AnalysisRequest(BaseModel):
    kind: AnalysisKind = AnalysisKind.SINGLE_WINDOW
    range_start: datetime
    range_end: datetime


class ReanalysisSessionOut(BaseModel):
    id: uuid.UUID
    kind: AnalysisKind
    range_start: datetime
    range_end: datetime
    trip_ids: list[str]
    status: SessionStatus
    payload: dict[str, Any] | None
    cache_key: str
    cache_hit: bool
    source_session_id: uuid.UUID | None
    execution_ms: int
    created_at: datetime
