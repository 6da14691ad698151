from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from farecheck.core.db import db_session
from farecheck.modules.review.models import ReviewTaskStatus
from farecheck.modules.review.schemas import ReviewTaskOut
from farecheck.modules.review.service import list_review_tasks, resolve_review_task

router = APIRouter(tags=["review"])


@router.get("/review/tasks", response_model=list[ReviewTaskOut])
def list_tasks(
    status: ReviewTaskStatus | None = None,
    trip_id: uuid.UUID | None = None,
    session: Session = Depends(db_session),
) -> list[ReviewTaskOut]:
    tasks = list_review_tasks(session, status=status, trip_id=trip_id)
    return [ReviewTaskOut.model_validate(t, from_attributes=True) for t in tasks]


@router.post("/review/tasks/{task_id}/resolve", response_model=ReviewTaskOut)
def resolve_task(
    task_id: uuid.UUID,
    session: Session = Depends(db_session),
) -> ReviewTaskOut:
    task = resolve_review_task(session, task_id=task_id)
    return ReviewTaskOut.model_validate(task, from_attributes=True)
