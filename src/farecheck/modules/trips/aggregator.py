from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from farecheck.core.config import settings
from farecheck.core.locks import KeyedLocks
from farecheck.core.logging import get_logger, log_context, log_event
from farecheck.core.models import as_utc
from farecheck.modules.cache.service import ComputationCache
from farecheck.modules.classification.classifier import (
    ODOMETER_FIELDS,
    SETTLEMENT_FIELDS,
    Classification,
)
from farecheck.modules.recognition.fields import NUMERIC_FIELDS, parse_amount
from farecheck.modules.review.models import ReviewTaskStatus, ReviewTaskType
from farecheck.modules.review.service import sync_review_task
from farecheck.modules.trips.metrics import field_amount, implied_state, recompute_metrics
from farecheck.modules.trips.models import Trip, TripState
from farecheck.modules.trips.variance import apply_variance
from farecheck.modules.uploads.models import DocumentStatus, UploadedDocument

logger = get_logger(__name__)

_trip_locks = KeyedLocks()

MERGED = "merged"
AMBIGUOUS = "ambiguous"
CONFLICT = "conflict"
ALREADY_MERGED = "already_merged"


@dataclass(frozen=True)
class AttachOutcome:
    status: str
    document_id: uuid.UUID
    trip_id: uuid.UUID | None = None
    state: TripState | None = None
    previous_state: TripState | None = None
    completed_now: bool = False

    @property
    def needs_attention(self) -> bool:
        return self.status in {AMBIGUOUS, CONFLICT}


def get_or_open_trip(session: Session, *, trip_ref: str | None) -> Trip:
    """Trip for a caller correlation key; uncorrelated documents each open their own trip."""
    if trip_ref:
        trip = session.scalar(select(Trip).where(Trip.trip_ref == trip_ref))
        if trip:
            return trip

    trip = Trip(trip_ref=trip_ref or None, state=TripState.INCOMPLETE, version=0)
    try:
        with session.begin_nested():
            session.add(trip)
            session.flush()
    except IntegrityError:
        trip = session.scalar(select(Trip).where(Trip.trip_ref == trip_ref))
        if not trip:
            raise
        # End the transaction so the failed insert's write lock is not held into the merge.
        session.commit()
        return trip
    session.commit()
    session.refresh(trip)
    log_event(logger, "trip.opened", trip_id=str(trip.id), trip_ref=trip_ref)
    return trip


def _record_classification(document: UploadedDocument, classification: Classification) -> None:
    document.classified_type = classification.document_type.value
    document.classification_confidence = classification.confidence
    document.missing_fields = list(classification.missing_expected_fields)
    document.status = DocumentStatus.CLASSIFIED
    document.last_error = None


def _load_document(session: Session, document_id: uuid.UUID) -> UploadedDocument:
    document = session.scalar(
        select(UploadedDocument)
        .where(UploadedDocument.id == document_id)
        .execution_options(populate_existing=True)
    )
    if not document:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    return document


def hold_for_review(
    session: Session, *, document_id: uuid.UUID, classification: Classification
) -> AttachOutcome:
    """Ambiguous documents are recorded and queued for a human, never merged."""
    document = _load_document(session, document_id)
    _record_classification(document, classification)
    session.add(document)
    sync_review_task(
        session,
        task_type=ReviewTaskType.AMBIGUOUS_CLASSIFICATION,
        subject=str(document.id),
        status=ReviewTaskStatus.OPEN,
        title=f"Check screenshot: {document.filename}",
        description=(
            f"Classified as {classification.document_type.value} with confidence "
            f"{classification.confidence:.2f}. Missing: "
            + (", ".join(classification.missing_expected_fields) or "nothing")
        ),
        document_id=document.id,
    )
    session.commit()
    log_event(
        logger,
        "trip.attach.ambiguous",
        document_id=str(document.id),
        document_type=classification.document_type.value,
        confidence=classification.confidence,
    )
    return AttachOutcome(status=AMBIGUOUS, document_id=document.id)


def _odometer_readings(
    session: Session, trip: Trip, incoming: UploadedDocument
) -> list[Decimal]:
    docs = list(
        session.scalars(
            select(UploadedDocument).where(
                UploadedDocument.trip_id == trip.id,
                UploadedDocument.merge_sequence.is_not(None),
            )
        )
    )
    if incoming not in docs:
        docs.append(incoming)
    readings = []
    for doc in docs:
        reading = field_amount(doc.normalized_fields or {}, ODOMETER_FIELDS[:1])
        if reading is not None:
            readings.append(reading)
    return readings


def attach_document(
    session: Session,
    *,
    trip_id: uuid.UUID,
    document_id: uuid.UUID,
    classification: Classification,
    cache: ComputationCache,
    now: datetime | None = None,
) -> AttachOutcome:
    if classification.is_ambiguous(settings.classification_confidence_floor):
        return hold_for_review(session, document_id=document_id, classification=classification)

    now = now or datetime.now(UTC)
    # Every mutation of one trip runs under its lock; other trips proceed in parallel.
    with _trip_locks.hold(trip_id), log_context(trip_id=str(trip_id)):
        trip = session.scalar(
            select(Trip)
            .where(Trip.id == trip_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not trip:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")
        document = _load_document(session, document_id)

        if document.trip_id is not None and document.merge_sequence is not None:
            if document.trip_id != trip.id:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Document already belongs to another trip",
                )
            return AttachOutcome(
                status=ALREADY_MERGED,
                document_id=document.id,
                trip_id=trip.id,
                state=trip.state,
                previous_state=trip.state,
            )

        _record_classification(document, classification)
        incoming = document.normalized_fields or {}

        conflict_claim = None
        incoming_settlement = field_amount(incoming, SETTLEMENT_FIELDS)
        if (
            incoming_settlement is not None
            and trip.settlement_amount is not None
            and incoming_settlement != trip.settlement_amount
        ):
            conflict_claim = {
                "field": "settlement_amount",
                "kept_value": str(trip.settlement_amount),
                "kept_source_document_id": _settlement_source(trip),
                "claimed_value": str(incoming_settlement),
                "claimed_source_document_id": str(document.id),
                "observed_at": now.isoformat(),
            }

        # Last writer wins per field, in the order observed under the trip lock.
        merged = dict(trip.merged_fields or {})
        for name, candidate in incoming.items():
            if conflict_claim and name in SETTLEMENT_FIELDS:
                continue
            # An unreadable number never replaces a value that was read.
            if name in NUMERIC_FIELDS and parse_amount(candidate.get("value")) is None:
                continue
            merged[name] = {
                "value": candidate.get("value"),
                "confidence": candidate.get("confidence"),
                "source_document_id": str(document.id),
            }
        trip.merged_fields = merged

        sequence = (trip.document_count or 0) + 1
        trip.document_count = sequence
        trip.version = (trip.version or 0) + 1
        document.trip_id = trip.id
        document.merge_sequence = sequence
        document.merged_at = now
        uploaded_at = as_utc(document.uploaded_at)
        if trip.started_at is None or uploaded_at < as_utc(trip.started_at):
            trip.started_at = uploaded_at

        if conflict_claim:
            trip.conflicts = [*(trip.conflicts or []), conflict_claim]
            trip.needs_reconciliation = True
            sync_review_task(
                session,
                task_type=ReviewTaskType.MERGE_CONFLICT,
                subject=str(trip.id),
                status=ReviewTaskStatus.OPEN,
                title="Conflicting settlement screenshots",
                description=(
                    f"Settlement {conflict_claim['kept_value']} is contradicted by "
                    f"{conflict_claim['claimed_value']} from {document.filename}. "
                    "Variance is withheld until reconciled."
                ),
                trip_id=trip.id,
                document_id=document.id,
            )

        recompute_metrics(
            trip,
            odometer_readings=_odometer_readings(session, trip, document),
            vehicle_mpg=settings.vehicle_mpg,
            fuel_price_per_gallon=settings.fuel_price_per_gallon,
        )

        previous_state = trip.state
        implied = implied_state(merged)
        # High-water mark: state never moves backwards on its own.
        if implied.rank > previous_state.rank:
            trip.state = implied
        completed_now = trip.state == TripState.COMPLETE and trip.completed_at is None
        if completed_now:
            trip.completed_at = now
        variance = apply_variance(trip, epsilon=settings.variance_epsilon)

        session.add(document)
        session.add(trip)
        session.commit()
        session.refresh(trip)

        if completed_now:
            cache.invalidate_trip(trip.id)

        log_event(
            logger,
            "trip.attach.merged",
            document_id=str(document.id),
            document_type=classification.document_type.value,
            merge_sequence=sequence,
            version=trip.version,
            from_state=previous_state.value,
            to_state=trip.state.value,
            tip_variance=str(variance.variance) if variance else None,
            accuracy=variance.accuracy.value if variance else None,
            conflict=bool(conflict_claim),
        )
        return AttachOutcome(
            status=CONFLICT if conflict_claim else MERGED,
            document_id=document.id,
            trip_id=trip.id,
            state=trip.state,
            previous_state=previous_state,
            completed_now=completed_now,
        )


def _settlement_source(trip: Trip) -> str | None:
    for name in SETTLEMENT_FIELDS:
        entry = (trip.merged_fields or {}).get(name)
        if isinstance(entry, dict):
            return entry.get("source_document_id")
    return None


def route_document(
    session: Session,
    *,
    document_id: uuid.UUID,
    trip_ref: str | None,
    classification: Classification,
    cache: ComputationCache,
) -> AttachOutcome:
    """Open or find the trip for a classified document and merge it."""
    if classification.is_ambiguous(settings.classification_confidence_floor):
        return hold_for_review(session, document_id=document_id, classification=classification)
    trip = get_or_open_trip(session, trip_ref=trip_ref)
    return attach_document(
        session,
        trip_id=trip.id,
        document_id=document_id,
        classification=classification,
        cache=cache,
    )
