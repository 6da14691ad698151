from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel

from farecheck.modules.review.models import ReviewTaskStatus, ReviewTaskType


class ReviewTaskOut(BaseModel):
    id: uuid.UUID
    type: ReviewTaskType
    subject: str
    trip_id: uuid.UUID | None
    document_id: uuid.UUID | None
    title: str
    description: str | None
    status: ReviewTaskStatus
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None
