from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from farecheck.core.models import Base, Timestamped, UUIDPrimaryKey


class DocumentStatus(str, enum.Enum):
    PENDING = "PENDING"
    CLASSIFIED = "CLASSIFIED"
    REJECTED_DUPLICATE = "REJECTED_DUPLICATE"


class DuplicateMethod(str, enum.Enum):
    EXACT_HASH = "exact_hash"
    SIMILARITY_HASH = "similarity_hash"
    FILENAME_SIZE_WINDOW = "filename_size_window"
    FINGERPRINT = "fingerprint"


class UploadedDocument(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "uploads_document"
    __table_args__ = (
        UniqueConstraint("trip_id", "merge_sequence", name="uq_uploads_document_trip_merge_seq"),
    )

    exact_hash: Mapped[str] = mapped_column(String(64), index=True)
    # Equals exact_hash while the document is admitted, NULL once rejected.
    # NULLs never collide, so the constraint only covers admitted content.
    admitted_hash: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    similarity_hash: Mapped[str] = mapped_column(String(16), index=True)
    byte_size: Mapped[int] = mapped_column(Integer, index=True)

    filename: Mapped[str] = mapped_column(String(512), index=True)
    content_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    storage_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), index=True
    )

    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus, native_enum=False), index=True
    )
    duplicate_of_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("uploads_document.id"), nullable=True
    )

    trip_ref: Mapped[str | None] = mapped_column(String(200), nullable=True, index=True)
    trip_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("trips_trip.id"), nullable=True, index=True
    )
    merge_sequence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    merged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    classified_type: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    classification_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    missing_fields: Mapped[list] = mapped_column(JSON, default=list)
    candidate_fields: Mapped[dict] = mapped_column(JSON, default=dict)
    normalized_fields: Mapped[dict] = mapped_column(JSON, default=dict)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class DuplicateBlockRecord(UUIDPrimaryKey, Base):
    __tablename__ = "uploads_duplicate_block"

    document_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("uploads_document.id"), nullable=True, index=True
    )
    matched_document_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("uploads_document.id"), nullable=True, index=True
    )
    method: Mapped[DuplicateMethod] = mapped_column(
        Enum(DuplicateMethod, native_enum=False), index=True
    )
    reason: Mapped[str] = mapped_column(String(50), index=True)
    message: Mapped[str] = mapped_column(Text)
    retryable: Mapped[bool] = mapped_column(Boolean, default=False)

    filename: Mapped[str] = mapped_column(String(512))
    byte_size: Mapped[int] = mapped_column(Integer)
    exact_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    similarity_hash: Mapped[str | None] = mapped_column(String(16), nullable=True)

    blocked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), index=True
    )
