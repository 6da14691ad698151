from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from farecheck.modules.uploads.models import DocumentStatus


class UploadedDocumentOut(BaseModel):
    id: uuid.UUID
    filename: str
    content_type: str | None
    byte_size: int
    exact_hash: str
    similarity_hash: str
    status: DocumentStatus
    duplicate_of_id: uuid.UUID | None
    trip_ref: str | None
    trip_id: uuid.UUID | None
    merge_sequence: int | None
    classified_type: str | None
    classification_confidence: float | None
    missing_fields: list[str]
    normalized_fields: dict[str, Any]
    last_error: str | None
    uploaded_at: datetime
    created_at: datetime
    updated_at: datetime


class UploadResultOut(BaseModel):
    accepted: bool
    reason: str | None = None
    message: str | None = None
    retryable: bool = False
    matched_document_id: uuid.UUID | None = None
    document: UploadedDocumentOut | None = None


class DuplicateStatsOut(BaseModel):
    total_documents: int
    admitted_documents: int
    duplicates_blocked: int
    blocked_last_24h: int
    by_reason: dict[str, int]
