from __future__ import annotations

import hashlib
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from farecheck.core.config import settings
from farecheck.core.db import SessionLocal
from farecheck.core.logging import get_logger, log_event, log_exception, monotonic_ms
from farecheck.core.storage import StorageError, get_storage, screenshot_key
from farecheck.modules.cache.keys import cache_key
from farecheck.modules.cache.service import (
    CacheComputationTimeout,
    ComputationCache,
    get_cache,
)
from farecheck.modules.cache.store import CacheKeyCollision
from farecheck.modules.classification.classifier import classify
from farecheck.modules.recognition.client import (
    OpenAIVisionRecognizer,
    RecognitionUnavailable,
    Recognizer,
)
from farecheck.modules.recognition.fields import normalize_candidate_fields
from farecheck.modules.trips.aggregator import AttachOutcome, route_document
from farecheck.modules.uploads.gate import Admission, DuplicateGate
from farecheck.modules.uploads.models import DocumentStatus, UploadedDocument

logger = get_logger(__name__)

RECOGNITION_OPERATION = "recognition.fields"
RECOGNITION_SCHEMA_VERSION = 1
RECOGNITION_UNAVAILABLE = "recognition_unavailable"


@dataclass(frozen=True)
class UploadOutcome:
    admission: Admission
    storage_key: str | None = None

    @property
    def accepted(self) -> bool:
        return self.admission.accepted

    @property
    def document(self) -> UploadedDocument | None:
        return self.admission.document

    @property
    def document_id(self) -> uuid.UUID | None:
        return self.admission.document.id if self.admission.accepted else None

    @property
    def trip_id(self) -> uuid.UUID | None:
        # Set once the worker has merged the document.
        return self.admission.document.trip_id if self.admission.accepted else None


@dataclass(frozen=True)
class ProcessOutcome:
    document_id: uuid.UUID
    status: str
    retryable: bool = False
    error: str | None = None
    recognition_reused: bool = False
    attach: AttachOutcome | None = None


def submit_upload(
    session: Session,
    *,
    body: bytes,
    filename: str,
    content_type: str | None = None,
    trip_ref: str | None = None,
    gate: DuplicateGate | None = None,
) -> UploadOutcome:
    """
    Store the screenshot and run it through the duplicate gate.

    Bytes are written under a content-addressed key before the gate decides.
    Rejected uploads record that key too, so no stored object is left unreferenced.
    """
    gate = gate or DuplicateGate.from_settings()
    filename = filename or "upload.bin"
    storage_key = None
    if isinstance(body, bytes) and body:
        storage_key = screenshot_key(exact_hash=hashlib.sha256(body).hexdigest(), filename=filename)
        get_storage().put(key=storage_key, body=body, content_type=content_type)

    admission = gate.admit(
        session,
        body=body,
        filename=filename,
        content_type=content_type,
        trip_ref=trip_ref,
        storage_key=storage_key,
    )
    return UploadOutcome(admission=admission, storage_key=storage_key)


def get_document(session: Session, *, document_id: uuid.UUID) -> UploadedDocument:
    document = session.scalar(select(UploadedDocument).where(UploadedDocument.id == document_id))
    if not document:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    return document


def _default_recognizer() -> Recognizer:
    return OpenAIVisionRecognizer()


def _recognize(
    *,
    document: UploadedDocument,
    body: bytes,
    recognizer: Recognizer,
    cache: ComputationCache,
) -> tuple[dict[str, Any], bool]:
    key = cache_key(
        RECOGNITION_OPERATION,
        {
            "exact_hash": document.exact_hash,
            "model": getattr(recognizer, "model", None),
            "schema": RECOGNITION_SCHEMA_VERSION,
        },
    )
    filename = document.filename
    content_type = document.content_type
    try:
        result = cache.get_or_compute(
            key,
            lambda: recognizer.recognize(body, filename=filename, content_type=content_type),
        )
    except CacheKeyCollision:
        # Two runs read the same bytes differently; the first stored reading stands.
        stored = cache.store.get(key.digest)
        if stored is None:
            raise
        log_event(
            logger,
            "processing.recognition.collision_resolved",
            document_id=str(document.id),
            cache_key=key.digest,
        )
        return json.loads(stored.value_json), True
    return result.value, result.reused


def process_document(
    *,
    document_id: str | uuid.UUID,
    recognizer: Recognizer | None = None,
    cache: ComputationCache | None = None,
) -> ProcessOutcome:
    """
    Recognize, classify and merge one admitted screenshot.

    Runs in a worker with its own session. Recognition failures leave the
    document PENDING with ``last_error`` set so it can be retried; nothing is
    merged from a failed attempt.
    """
    document_id = uuid.UUID(str(document_id))
    recognizer = recognizer or _default_recognizer()
    cache = cache or get_cache()

    with SessionLocal() as session:
        document = session.scalar(
            select(UploadedDocument).where(UploadedDocument.id == document_id)
        )
        if not document:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")

        start = time.monotonic()
        log_event(
            logger,
            "processing.start",
            document_id=str(document.id),
            filename=document.filename,
            byte_size=document.byte_size,
            exact_hash=document.exact_hash,
            document_status=document.status.value,
        )
        if document.status != DocumentStatus.PENDING:
            log_event(
                logger,
                "processing.skipped",
                document_id=str(document.id),
                document_status=document.status.value,
            )
            return ProcessOutcome(document_id=document.id, status=document.status.value)

        try:
            body = get_storage().get(key=document.storage_key or "")
            candidates, reused = _recognize(
                document=document, body=body, recognizer=recognizer, cache=cache
            )
        except (RecognitionUnavailable, CacheComputationTimeout, StorageError) as e:
            document.last_error = str(e)
            session.add(document)
            session.commit()
            log_event(
                logger,
                "processing.retryable_failure",
                document_id=str(document.id),
                error_type=type(e).__name__,
                error=str(e),
                duration_ms=monotonic_ms(start),
            )
            return ProcessOutcome(
                document_id=document.id,
                status=RECOGNITION_UNAVAILABLE,
                retryable=True,
                error=str(e),
            )

        normalized = normalize_candidate_fields(
            candidates, confidence_floor=settings.recognition_field_confidence_floor
        )
        document.candidate_fields = candidates
        document.normalized_fields = normalized
        document.last_error = None
        session.add(document)
        session.commit()

        classification = classify(normalized)
        try:
            attach = route_document(
                session,
                document_id=document.id,
                trip_ref=document.trip_ref,
                classification=classification,
                cache=cache,
            )
        except Exception:
            session.rollback()
            log_exception(
                logger,
                "processing.error",
                document_id=str(document_id),
                duration_ms=monotonic_ms(start),
            )
            raise

        log_event(
            logger,
            "processing.finish",
            document_id=str(document_id),
            document_type=classification.document_type.value,
            confidence=classification.confidence,
            outcome=attach.status,
            trip_id=str(attach.trip_id) if attach.trip_id else None,
            recognition_reused=reused,
            duration_ms=monotonic_ms(start),
        )
        return ProcessOutcome(
            document_id=document_id,
            status=attach.status,
            recognition_reused=reused,
            attach=attach,
        )


def retry_document(session: Session, *, document_id: uuid.UUID) -> UploadedDocument:
    """Clear the last error on a stuck document so it can be queued again."""
    document = get_document(session, document_id=document_id)
    if document.status != DocumentStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Document is {document.status.value}, only PENDING documents can be retried",
        )
    document.last_error = None
    session.add(document)
    session.commit()
    session.refresh(document)
    log_event(logger, "processing.retry.requested", document_id=str(document.id))
    return document
