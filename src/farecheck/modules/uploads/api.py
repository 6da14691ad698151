from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from farecheck.core.db import db_session
from farecheck.core.logging import get_logger, log_event
from farecheck.modules.uploads.gate import duplicate_stats
from farecheck.modules.uploads.schemas import (
    DuplicateStatsOut,
    UploadedDocumentOut,
    UploadResultOut,
)
from farecheck.modules.uploads.service import get_document, retry_document, submit_upload
from farecheck.worker.tasks import process_document_task

router = APIRouter(tags=["uploads"])
logger = get_logger(__name__)


def _enqueue(document_id: uuid.UUID) -> None:
    async_result = process_document_task.delay(str(document_id))
    log_event(
        logger,
        "celery.task.enqueued",
        task_name="process_document",
        celery_task_id=async_result.id,
        document_id=str(document_id),
    )


@router.post("/uploads", response_model=UploadResultOut)
async def upload_screenshot(
    upload: UploadFile = File(...),
    trip_ref: str | None = Form(default=None),
    session: Session = Depends(db_session),
) -> JSONResponse:
    body = await upload.read()
    filename = upload.filename or "upload.bin"
    log_event(
        logger,
        "upload.received",
        filename=filename,
        content_type=upload.content_type,
        byte_size=len(body),
        trip_ref=trip_ref,
    )
    outcome = submit_upload(
        session,
        body=body,
        filename=filename,
        content_type=upload.content_type,
        trip_ref=trip_ref or None,
    )
    admission = outcome.admission
    document = admission.document
    result = UploadResultOut(
        accepted=admission.accepted,
        reason=admission.reason,
        message=admission.message,
        retryable=admission.retryable,
        matched_document_id=admission.matched_document_id,
        document=(
            UploadedDocumentOut.model_validate(document, from_attributes=True)
            if document is not None
            else None
        ),
    )
    if admission.accepted:
        _enqueue(document.id)
        status_code = 201
    elif admission.retryable:
        status_code = 422
    else:
        status_code = 409
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@router.get("/uploads/duplicates/stats", response_model=DuplicateStatsOut)
def duplicate_stats_endpoint(session: Session = Depends(db_session)) -> DuplicateStatsOut:
    return DuplicateStatsOut(**duplicate_stats(session))


@router.get("/uploads/{document_id}", response_model=UploadedDocumentOut)
def get_upload(
    document_id: uuid.UUID,
    session: Session = Depends(db_session),
) -> UploadedDocumentOut:
    document = get_document(session, document_id=document_id)
    return UploadedDocumentOut.model_validate(document, from_attributes=True)


@router.post("/uploads/{document_id}/retry", response_model=UploadedDocumentOut)
def retry_upload(
    document_id: uuid.UUID,
    session: Session = Depends(db_session),
) -> UploadedDocumentOut:
    document = retry_document(session, document_id=document_id)
    _enqueue(document.id)
    return UploadedDocumentOut.model_validate(document, from_attributes=True)
