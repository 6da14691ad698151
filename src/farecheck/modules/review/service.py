from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from farecheck.core.logging import get_logger, log_event
from farecheck.modules.review.models import ReviewTask, ReviewTaskStatus, ReviewTaskType

logger = get_logger(__name__)


def sync_review_task(
    session: Session,
    *,
    task_type: ReviewTaskType,
    subject: str,
    status: ReviewTaskStatus,
    title: str,
    description: str | None,
    trip_id: uuid.UUID | None = None,
    document_id: uuid.UUID | None = None,
) -> ReviewTask | None:
    """Keep one task per (type, subject); flushes but leaves the commit to the caller."""
    task = session.scalar(
        select(ReviewTask)
        .where(ReviewTask.type == task_type, ReviewTask.subject == subject)
        .order_by(ReviewTask.created_at.desc())
    )
    if not task and status == ReviewTaskStatus.RESOLVED:
        return None
    if not task:
        task = ReviewTask(
            type=task_type,
            subject=subject,
            trip_id=trip_id,
            document_id=document_id,
            title=title,
            description=description,
            status=status,
            resolved_at=None,
        )
        session.add(task)
        session.flush()
        log_event(
            logger,
            "review.task.upsert",
            task_id=str(task.id),
            task_type=task.type.value,
            task_status=task.status.value,
            subject=subject,
            action="created",
        )
        return task

    task.title = title
    task.description = description
    if status == ReviewTaskStatus.RESOLVED and task.status != ReviewTaskStatus.RESOLVED:
        task.status = ReviewTaskStatus.RESOLVED
        task.resolved_at = datetime.now(UTC)
    if status == ReviewTaskStatus.OPEN and task.status != ReviewTaskStatus.OPEN:
        task.status = ReviewTaskStatus.OPEN
        task.resolved_at = None
    session.add(task)
    session.flush()
    log_event(
        logger,
        "review.task.upsert",
        task_id=str(task.id),
        task_type=task.type.value,
        task_status=task.status.value,
        subject=subject,
        action="updated",
    )
    return task


def list_review_tasks(
    session: Session,
    *,
    status: ReviewTaskStatus | None = None,
    trip_id: uuid.UUID | None = None,
) -> list[ReviewTask]:
    q = select(ReviewTask)
    if status is not None:
        q = q.where(ReviewTask.status == status)
    if trip_id is not None:
        q = q.where(ReviewTask.trip_id == trip_id)
    return list(session.scalars(q.order_by(ReviewTask.created_at.desc())))


def resolve_review_task(session: Session, *, task_id: uuid.UUID) -> ReviewTask:
    task = session.scalar(select(ReviewTask).where(ReviewTask.id == task_id))
    if not task:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    if task.status == ReviewTaskStatus.RESOLVED:
        return task

    task.status = ReviewTaskStatus.RESOLVED
    task.resolved_at = datetime.now(UTC)
    session.add(task)
    session.commit()
    session.refresh(task)
    return task
