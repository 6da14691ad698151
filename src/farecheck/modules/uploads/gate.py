from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from farecheck.core.config import settings
from farecheck.core.locks import KeyedLocks
from farecheck.core.logging import get_logger, log_event
from farecheck.modules.uploads.fingerprint import (
    Fingerprint,
    FingerprintUnavailable,
    fingerprint,
    hamming_distance,
    within_size_tolerance,
)
from farecheck.modules.uploads.models import (
    DocumentStatus,
    DuplicateBlockRecord,
    DuplicateMethod,
    UploadedDocument,
)

logger = get_logger(__name__)

REASON_EXACT = "exact-duplicate"
REASON_NEAR = "near-duplicate"
REASON_RAPID = "rapid-resubmit"
REASON_FINGERPRINT = "fingerprint-unavailable"

_hash_locks = KeyedLocks()


@dataclass(frozen=True)
class GateMatch:
    reason: str
    method: DuplicateMethod
    matched: UploadedDocument
    message: str


@dataclass(frozen=True)
class Admission:
    accepted: bool
    document: UploadedDocument | None = None
    reason: str | None = None
    matched_document_id: uuid.UUID | None = None
    retryable: bool = False
    message: str | None = None


@dataclass(frozen=True)
class UploadCandidate:
    fingerprint: Fingerprint
    filename: str
    received_at: datetime
    content_type: str | None = None
    trip_ref: str | None = None
    storage_key: str | None = None


Rule = Callable[[Session, UploadCandidate], GateMatch | None]


def _admitted(stmt):
    return stmt.where(UploadedDocument.status != DocumentStatus.REJECTED_DUPLICATE)


class DuplicateGate:
    """Single ordered decision list for every upload; first matching rule wins."""

    def __init__(
        self,
        *,
        size_tolerance: float,
        max_similarity_distance: int,
        resubmit_window: timedelta,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.size_tolerance = size_tolerance
        self.max_similarity_distance = max_similarity_distance
        self.resubmit_window = resubmit_window
        self._locks = locks or _hash_locks
        self.rules: tuple[Rule, ...] = (
            self._exact_hash_rule,
            self._near_duplicate_rule,
            self._rapid_resubmit_rule,
        )

    @classmethod
    def from_settings(cls) -> DuplicateGate:
        return cls(
            size_tolerance=settings.near_duplicate_size_tolerance,
            max_similarity_distance=settings.similarity_max_distance,
            resubmit_window=timedelta(seconds=settings.rapid_resubmit_window_seconds),
        )

    def admit(
        self,
        session: Session,
        *,
        body: bytes,
        filename: str,
        content_type: str | None = None,
        trip_ref: str | None = None,
        storage_key: str | None = None,
        received_at: datetime | None = None,
    ) -> Admission:
        received_at = received_at or datetime.now(UTC)
        try:
            fp = fingerprint(body)
        except FingerprintUnavailable as e:
            return self._reject_unhashable(session, body=body, filename=filename, error=e)

        candidate = UploadCandidate(
            fingerprint=fp,
            filename=filename,
            received_at=received_at,
            content_type=content_type,
            trip_ref=trip_ref,
            storage_key=storage_key,
        )

        # Serializes admits racing on one hash inside this process; the unique
        # admitted_hash constraint covers other processes.
        with self._locks.hold(fp.exact_hash):
            for rule in self.rules:
                match = rule(session, candidate)
                if match is not None:
                    return self._reject(session, candidate=candidate, match=match)

            document = UploadedDocument(
                exact_hash=fp.exact_hash,
                admitted_hash=fp.exact_hash,
                similarity_hash=fp.similarity_hash,
                byte_size=fp.byte_size,
                filename=filename,
                content_type=content_type,
                storage_key=storage_key,
                uploaded_at=received_at,
                trip_ref=trip_ref,
                status=DocumentStatus.PENDING,
            )
            try:
                with session.begin_nested():
                    session.add(document)
                    session.flush()
            except IntegrityError:
                match = self._exact_hash_rule(session, candidate)
                if match is None:
                    raise
                log_event(
                    logger,
                    "gate.admit.race_lost",
                    exact_hash=fp.exact_hash,
                    matched_document_id=str(match.matched.id),
                )
                return self._reject(session, candidate=candidate, match=match)
            session.commit()

        session.refresh(document)
        log_event(
            logger,
            "gate.admit.accepted",
            document_id=str(document.id),
            exact_hash=fp.exact_hash,
            similarity_hash=fp.similarity_hash,
            byte_size=fp.byte_size,
            filename=filename,
        )
        return Admission(accepted=True, document=document)

    def _exact_hash_rule(self, session: Session, candidate: UploadCandidate) -> GateMatch | None:
        existing = session.scalar(
            select(UploadedDocument).where(
                UploadedDocument.admitted_hash == candidate.fingerprint.exact_hash
            )
        )
        if not existing:
            return None
        return GateMatch(
            reason=REASON_EXACT,
            method=DuplicateMethod.EXACT_HASH,
            matched=existing,
            message=f"Identical screenshot already uploaded as {existing.filename}",
        )

    def _near_duplicate_rule(
        self, session: Session, candidate: UploadCandidate
    ) -> GateMatch | None:
        fp = candidate.fingerprint
        slack = int(fp.byte_size * self.size_tolerance) + 1
        stmt = _admitted(
            select(UploadedDocument).where(
                UploadedDocument.byte_size.between(fp.byte_size - slack, fp.byte_size + slack)
            )
        )
        if self.max_similarity_distance <= 0:
            stmt = stmt.where(UploadedDocument.similarity_hash == fp.similarity_hash)
        for existing in session.scalars(stmt.order_by(UploadedDocument.uploaded_at)):
            if not within_size_tolerance(existing.byte_size, fp.byte_size, self.size_tolerance):
                continue
            distance = hamming_distance(existing.similarity_hash, fp.similarity_hash)
            if distance > self.max_similarity_distance:
                continue
            return GateMatch(
                reason=REASON_NEAR,
                method=DuplicateMethod.SIMILARITY_HASH,
                matched=existing,
                message=(
                    f"Looks like a re-encoded copy of {existing.filename} "
                    f"(similarity distance {distance}, {existing.byte_size} vs "
                    f"{fp.byte_size} bytes)"
                ),
            )
        return None

    def _rapid_resubmit_rule(
        self, session: Session, candidate: UploadCandidate
    ) -> GateMatch | None:
        since = candidate.received_at - self.resubmit_window
        existing = session.scalar(
            _admitted(
                select(UploadedDocument).where(
                    UploadedDocument.filename == candidate.filename,
                    UploadedDocument.byte_size == candidate.fingerprint.byte_size,
                    UploadedDocument.uploaded_at >= since,
                )
            ).order_by(UploadedDocument.uploaded_at.desc())
        )
        if not existing:
            return None
        window_s = int(self.resubmit_window.total_seconds())
        return GateMatch(
            reason=REASON_RAPID,
            method=DuplicateMethod.FILENAME_SIZE_WINDOW,
            matched=existing,
            message=(
                f"{candidate.filename} with the same size was uploaded less than "
                f"{window_s}s ago"
            ),
        )

    def _reject(
        self,
        session: Session,
        *,
        candidate: UploadCandidate,
        match: GateMatch,
    ) -> Admission:
        fp = candidate.fingerprint
        rejected = UploadedDocument(
            exact_hash=fp.exact_hash,
            admitted_hash=None,
            similarity_hash=fp.similarity_hash,
            byte_size=fp.byte_size,
            filename=candidate.filename,
            content_type=candidate.content_type,
            # Rejected rows keep the key so every stored object stays referenced.
            storage_key=candidate.storage_key,
            uploaded_at=candidate.received_at,
            trip_ref=candidate.trip_ref,
            status=DocumentStatus.REJECTED_DUPLICATE,
            duplicate_of_id=match.matched.id,
        )
        session.add(rejected)
        session.flush()
        session.add(
            DuplicateBlockRecord(
                document_id=rejected.id,
                matched_document_id=match.matched.id,
                method=match.method,
                reason=match.reason,
                message=match.message,
                retryable=False,
                filename=candidate.filename,
                byte_size=fp.byte_size,
                exact_hash=fp.exact_hash,
                similarity_hash=fp.similarity_hash,
                blocked_at=candidate.received_at,
            )
        )
        session.commit()
        log_event(
            logger,
            "gate.admit.rejected",
            reason=match.reason,
            method=match.method.value,
            document_id=str(rejected.id),
            matched_document_id=str(match.matched.id),
            exact_hash=fp.exact_hash,
            filename=candidate.filename,
        )
        return Admission(
            accepted=False,
            document=rejected,
            reason=match.reason,
            matched_document_id=match.matched.id,
            message=match.message,
        )

    def _reject_unhashable(
        self, session: Session, *, body: Any, filename: str, error: Exception
    ) -> Admission:
        try:
            byte_size = len(body)
        except TypeError:
            byte_size = 0
        message = f"Could not fingerprint upload: {error}"
        session.add(
            DuplicateBlockRecord(
                document_id=None,
                matched_document_id=None,
                method=DuplicateMethod.FINGERPRINT,
                reason=REASON_FINGERPRINT,
                message=message,
                retryable=True,
                filename=filename,
                byte_size=byte_size,
            )
        )
        session.commit()
        log_event(
            logger,
            "gate.admit.rejected",
            reason=REASON_FINGERPRINT,
            filename=filename,
            byte_size=byte_size,
            error=str(error),
        )
        return Admission(
            accepted=False, reason=REASON_FINGERPRINT, retryable=True, message=message
        )


def duplicate_stats(session: Session, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.now(UTC)
    since = now - timedelta(hours=24)
    total = session.scalar(select(func.count()).select_from(UploadedDocument)) or 0
    admitted = (
        session.scalar(_admitted(select(func.count()).select_from(UploadedDocument))) or 0
    )
    blocked = session.scalar(select(func.count()).select_from(DuplicateBlockRecord)) or 0
    recent = (
        session.scalar(
            select(func.count())
            .select_from(DuplicateBlockRecord)
            .where(DuplicateBlockRecord.blocked_at >= since)
        )
        or 0
    )
    by_reason = {
        reason: count
        for reason, count in session.execute(
            select(DuplicateBlockRecord.reason, func.count()).group_by(
                DuplicateBlockRecord.reason
            )
        )
    }
    return {
        "total_documents": total,
        "admitted_documents": admitted,
        "duplicates_blocked": blocked,
        "blocked_last_24h": recent,
        "by_reason": by_reason,
    }
