"""initial schema

Revision ID: 3c1e7a9b52d4
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "3c1e7a9b52d4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _money(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=True)


def upgrade() -> None:
    op.create_table(
        "trips_trip",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("trip_ref", sa.String(length=200), nullable=True),
        sa.Column("state", sa.String(length=10), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("merged_fields", sa.JSON(), nullable=False),
        sa.Column("document_count", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _money("estimate_amount"),
        _money("settlement_amount"),
        _money("estimated_tip"),
        _money("actual_tip"),
        _money("distance_miles"),
        _money("duration_minutes"),
        _money("fuel_cost"),
        _money("net_profit"),
        _money("profit_per_mile"),
        _money("tip_variance"),
        sa.Column("variance_accuracy", sa.String(length=5), nullable=True),
        sa.Column("needs_reconciliation", sa.Boolean(), nullable=False),
        sa.Column("conflicts", sa.JSON(), nullable=False),
        sa.UniqueConstraint("trip_ref"),
    )
    op.create_index("ix_trips_trip_state", "trips_trip", ["state"])
    op.create_index("ix_trips_trip_started_at", "trips_trip", ["started_at"])
    op.create_index(
        "ix_trips_trip_needs_reconciliation", "trips_trip", ["needs_reconciliation"]
    )

    op.create_table(
        "uploads_document",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("exact_hash", sa.String(length=64), nullable=False),
        sa.Column("admitted_hash", sa.String(length=64), nullable=True),
        sa.Column("similarity_hash", sa.String(length=16), nullable=False),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("content_type", sa.String(length=200), nullable=True),
        sa.Column("storage_key", sa.String(length=1024), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=18), nullable=False),
        sa.Column(
            "duplicate_of_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("uploads_document.id"),
            nullable=True,
        ),
        sa.Column("trip_ref", sa.String(length=200), nullable=True),
        sa.Column(
            "trip_id", sa.Uuid(as_uuid=True), sa.ForeignKey("trips_trip.id"), nullable=True
        ),
        sa.Column("merge_sequence", sa.Integer(), nullable=True),
        sa.Column("merged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("classified_type", sa.String(length=50), nullable=True),
        sa.Column("classification_confidence", sa.Float(), nullable=True),
        sa.Column("missing_fields", sa.JSON(), nullable=False),
        sa.Column("candidate_fields", sa.JSON(), nullable=False),
        sa.Column("normalized_fields", sa.JSON(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.UniqueConstraint("admitted_hash"),
        sa.UniqueConstraint(
            "trip_id", "merge_sequence", name="uq_uploads_document_trip_merge_seq"
        ),
    )
    for column in (
        "exact_hash",
        "similarity_hash",
        "byte_size",
        "filename",
        "uploaded_at",
        "status",
        "trip_ref",
        "trip_id",
        "classified_type",
    ):
        op.create_index(f"ix_uploads_document_{column}", "uploads_document", [column])

    op.create_table(
        "uploads_duplicate_block",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "document_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("uploads_document.id"),
            nullable=True,
        ),
        sa.Column(
            "matched_document_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("uploads_document.id"),
            nullable=True,
        ),
        sa.Column("method", sa.String(length=20), nullable=False),
        sa.Column("reason", sa.String(length=50), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("retryable", sa.Boolean(), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("exact_hash", sa.String(length=64), nullable=True),
        sa.Column("similarity_hash", sa.String(length=16), nullable=True),
        sa.Column("blocked_at", sa.DateTime(timezone=True), nullable=False),
    )
    for column in (
        "document_id",
        "matched_document_id",
        "method",
        "reason",
        "exact_hash",
        "blocked_at",
    ):
        op.create_index(
            f"ix_uploads_duplicate_block_{column}", "uploads_duplicate_block", [column]
        )

    op.create_table(
        "cache_entry",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("operation", sa.String(length=100), nullable=False),
        sa.Column("value_json", sa.Text(), nullable=False),
        sa.Column("value_digest", sa.String(length=64), nullable=False),
        sa.Column("compute_ms", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invalidated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_cache_entry_key", "cache_entry", ["key"], unique=True)
    op.create_index("ix_cache_entry_operation", "cache_entry", ["operation"])
    op.create_index("ix_cache_entry_invalidated_at", "cache_entry", ["invalidated_at"])

    op.create_table(
        "cache_entry_trip",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("cache_key", sa.String(length=64), nullable=False),
        sa.Column(
            "trip_id", sa.Uuid(as_uuid=True), sa.ForeignKey("trips_trip.id"), nullable=False
        ),
        sa.UniqueConstraint("cache_key", "trip_id", name="uq_cache_entry_trip"),
    )
    op.create_index("ix_cache_entry_trip_cache_key", "cache_entry_trip", ["cache_key"])
    op.create_index("ix_cache_entry_trip_trip_id", "cache_entry_trip", ["trip_id"])

    op.create_table(
        "analysis_session",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("kind", sa.String(length=13), nullable=False),
        sa.Column("range_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("range_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trip_ids", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=15), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("cache_key", sa.String(length=64), nullable=False),
        sa.Column("cache_hit", sa.Boolean(), nullable=False),
        sa.Column(
            "source_session_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("analysis_session.id"),
            nullable=True,
        ),
        sa.Column("execution_ms", sa.Integer(), nullable=False),
    )
    op.create_index("ix_analysis_session_kind", "analysis_session", ["kind"])
    op.create_index("ix_analysis_session_status", "analysis_session", ["status"])
    op.create_index("ix_analysis_session_cache_key", "analysis_session", ["cache_key"])

    op.create_table(
        "review_task",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("type", sa.String(length=24), nullable=False),
        sa.Column("subject", sa.String(length=100), nullable=False),
        sa.Column(
            "trip_id", sa.Uuid(as_uuid=True), sa.ForeignKey("trips_trip.id"), nullable=True
        ),
        sa.Column(
            "document_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("uploads_document.id"),
            nullable=True,
        ),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=8), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_review_task_type", "review_task", ["type"])
    op.create_index("ix_review_task_subject", "review_task", ["subject"])
    op.create_index("ix_review_task_trip_id", "review_task", ["trip_id"])
    op.create_index("ix_review_task_status", "review_task", ["status"])


def downgrade() -> None:
    op.drop_table("review_task")
    op.drop_table("analysis_session")
    op.drop_table("cache_entry_trip")
    op.drop_table("cache_entry")
    op.drop_table("uploads_duplicate_block")
    op.drop_table("uploads_document")
    op.drop_table("trips_trip")
