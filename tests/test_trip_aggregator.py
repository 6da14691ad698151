from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from sqlalchemy import select

from farecheck.core.db import SessionLocal
from farecheck.core.models import as_utc
from farecheck.modules.cache.keys import canonical_json
from farecheck.modules.cache.models import CacheEntry
from farecheck.modules.classification.classifier import classify
from farecheck.modules.review.models import ReviewTask, ReviewTaskStatus, ReviewTaskType
from farecheck.modules.trips.aggregator import (
    ALREADY_MERGED,
    AMBIGUOUS,
    CONFLICT,
    MERGED,
    attach_document,
    route_document,
)
from farecheck.modules.trips.models import Trip, TripState, VarianceAccuracy
from farecheck.modules.trips.service import trip_insights
from farecheck.modules.uploads.gate import DuplicateGate
from farecheck.modules.uploads.models import UploadedDocument

T0 = datetime(2026, 3, 2, 17, 30, tzinfo=UTC)


def _f(value, confidence=0.95):
    return {"value": value, "confidence": confidence}


ESTIMATE = {"estimated_total": _f("18.50"), "estimated_tip": _f("3.00")}
SETTLEMENT = {"total_earnings": _f("22.75"), "actual_tip": _f("5.50")}


def _admit(session, body, *, filename, fields, trip_ref="trip-1", received_at=None):
    gate = DuplicateGate(
        size_tolerance=0.02, max_similarity_distance=0, resubmit_window=timedelta(minutes=5)
    )
    admission = gate.admit(
        session, body=body, filename=filename, trip_ref=trip_ref, received_at=received_at
    )
    assert admission.accepted
    document = admission.document
    document.normalized_fields = fields
    session.add(document)
    session.commit()
    return document


def _route(session, document, cache):
    return route_document(
        session,
        document_id=document.id,
        trip_ref=document.trip_ref,
        classification=classify(document.normalized_fields),
        cache=cache,
    )


def test_estimate_then_settlement_completes_trip_with_variance(screenshot_bytes, cache):
    with SessionLocal() as session:
        offer = _admit(
            session,
            screenshot_bytes("offer"),
            filename="offer.png",
            fields=ESTIMATE,
            received_at=T0,
        )
        first = _route(session, offer, cache)
        assert first.status == MERGED
        assert first.state == TripState.PARTIAL

        trip = session.get(Trip, first.trip_id)
        assert trip.estimate_amount == Decimal("18.50")
        assert trip.tip_variance is None
        assert trip.variance_accuracy is None

        final = _admit(
            session,
            screenshot_bytes("final"),
            filename="final.png",
            fields=SETTLEMENT,
            received_at=T0 + timedelta(minutes=25),
        )
        second = _route(session, final, cache)
        assert second.trip_id == first.trip_id
        assert second.previous_state == TripState.PARTIAL
        assert second.state == TripState.COMPLETE
        assert second.completed_now

        session.refresh(trip)
        assert trip.version == 2
        assert trip.document_count == 2
        assert trip.settlement_amount == Decimal("22.75")
        assert trip.tip_variance == Decimal("4.25")
        assert trip.variance_accuracy == VarianceAccuracy.OVER
        assert trip.completed_at is not None
        assert as_utc(trip.started_at) == T0
        assert trip.merged_fields["total_earnings"]["source_document_id"] == str(final.id)

        docs = list(
            session.scalars(
                select(UploadedDocument)
                .where(UploadedDocument.trip_id == trip.id)
                .order_by(UploadedDocument.merge_sequence)
            )
        )
        assert [d.merge_sequence for d in docs] == [1, 2]
        assert [d.id for d in docs] == [offer.id, final.id]


def test_state_never_moves_backwards(screenshot_bytes, cache):
    with SessionLocal() as session:
        for name, fields in (("o", ESTIMATE), ("s", SETTLEMENT)):
            doc = _admit(session, screenshot_bytes(name), filename=f"{name}.png", fields=fields)
            outcome = _route(session, doc, cache)
        assert outcome.state == TripState.COMPLETE

        odometer = _admit(
            session,
            screenshot_bytes("odo"),
            filename="odo.png",
            fields={"odometer_reading": _f("48210")},
        )
        later = _route(session, odometer, cache)
        assert later.status == MERGED
        assert later.state == TripState.COMPLETE
        assert not later.completed_now

        trip = session.get(Trip, later.trip_id)
        assert trip.version == 3


def test_odometer_spread_gives_distance_and_profit(screenshot_bytes, cache):
    with SessionLocal() as session:
        for name, fields in (
            ("settle", SETTLEMENT),
            ("odo-start", {"odometer_reading": _f("48210.0")}),
            ("odo-end", {"odometer_reading": _f("48216.5")}),
        ):
            doc = _admit(session, screenshot_bytes(name), filename=f"{name}.png", fields=fields)
            outcome = _route(session, doc, cache)

        trip = session.get(Trip, outcome.trip_id)
        assert trip.distance_miles == Decimal("6.50")
        # 6.5 mi / 19 mpg * $3.50
        assert trip.fuel_cost == Decimal("1.20")
        assert trip.net_profit == Decimal("21.55")
        assert trip.profit_per_mile == Decimal("3.32")


def test_conflicting_settlement_is_flagged_not_overwritten(screenshot_bytes, cache):
    with SessionLocal() as session:
        for name, fields in (("o", ESTIMATE), ("s", SETTLEMENT)):
            doc = _admit(session, screenshot_bytes(name), filename=f"{name}.png", fields=fields)
            _route(session, doc, cache)

        other = _admit(
            session,
            screenshot_bytes("s2"),
            filename="s2.png",
            fields={"total_earnings": _f("25.00")},
        )
        outcome = _route(session, other, cache)
        assert outcome.status == CONFLICT
        assert outcome.needs_attention

        trip = session.get(Trip, outcome.trip_id)
        assert trip.needs_reconciliation
        assert trip.settlement_amount == Decimal("22.75")
        assert trip.tip_variance is None
        assert trip.variance_accuracy is None
        assert trip.state == TripState.COMPLETE
        assert trip.conflicts[0]["claimed_value"] == "25.00"
        assert trip.conflicts[0]["kept_value"] == "22.75"

        task = session.scalar(
            select(ReviewTask).where(ReviewTask.type == ReviewTaskType.MERGE_CONFLICT)
        )
        assert task.status == ReviewTaskStatus.OPEN
        assert task.trip_id == trip.id


def test_unreadable_amount_does_not_replace_merged_settlement(screenshot_bytes, cache):
    with SessionLocal() as session:
        docs = {}
        for name, fields in (("o", ESTIMATE), ("s", SETTLEMENT)):
            docs[name] = _admit(
                session, screenshot_bytes(name), filename=f"{name}.png", fields=fields
            )
            outcome = _route(session, docs[name], cache)

        blurred = _admit(
            session,
            screenshot_bytes("blurred"),
            filename="blurred.png",
            fields={"total_earnings": _f("$--.--", 0.9), "dropoff_location": _f("Main St")},
        )
        merged = attach_document(
            session,
            trip_id=outcome.trip_id,
            document_id=blurred.id,
            classification=classify(SETTLEMENT),
            cache=cache,
        )
        assert merged.status == MERGED

        trip = session.get(Trip, merged.trip_id)
        session.refresh(trip)
        assert trip.document_count == 3
        assert not trip.needs_reconciliation
        assert trip.settlement_amount == Decimal("22.75")
        assert trip.tip_variance == Decimal("4.25")
        assert trip.merged_fields["total_earnings"] == {
            "value": "22.75",
            "confidence": 0.95,
            "source_document_id": str(docs["s"].id),
        }
        assert trip.merged_fields["dropoff_location"]["source_document_id"] == str(blurred.id)


def test_ambiguous_document_is_held_for_review(screenshot_bytes, cache):
    with SessionLocal() as session:
        doc = _admit(
            session,
            screenshot_bytes("blurry"),
            filename="blurry.png",
            fields={"estimated_total": _f("18.50", 0.55)},
        )
        outcome = _route(session, doc, cache)
        assert outcome.status == AMBIGUOUS
        assert outcome.trip_id is None

        session.refresh(doc)
        assert doc.trip_id is None
        assert doc.merge_sequence is None
        assert doc.classified_type == "offer_estimate"
        assert session.scalar(select(Trip)) is None

        task = session.scalar(select(ReviewTask))
        assert task.type == ReviewTaskType.AMBIGUOUS_CLASSIFICATION
        assert task.document_id == doc.id


def test_attach_is_idempotent_per_document(screenshot_bytes, cache):
    with SessionLocal() as session:
        doc = _admit(session, screenshot_bytes("o"), filename="o.png", fields=ESTIMATE)
        first = _route(session, doc, cache)
        again = attach_document(
            session,
            trip_id=first.trip_id,
            document_id=doc.id,
            classification=classify(ESTIMATE),
            cache=cache,
        )
        assert again.status == ALREADY_MERGED
        assert session.get(Trip, first.trip_id).version == 1


def test_uncorrelated_documents_open_separate_trips(screenshot_bytes, cache):
    with SessionLocal() as session:
        a = _admit(session, screenshot_bytes("a"), filename="a.png", fields=ESTIMATE, trip_ref=None)
        b = _admit(session, screenshot_bytes("b"), filename="b.png", fields=ESTIMATE, trip_ref=None)
        assert _route(session, a, cache).trip_id != _route(session, b, cache).trip_id


def test_concurrent_attaches_to_one_trip_serialize(screenshot_bytes, cache):
    with SessionLocal() as session:
        docs = [
            _admit(session, screenshot_bytes(name), filename=f"{name}.png", fields=fields)
            for name, fields in (("o", ESTIMATE), ("s", SETTLEMENT), ("d", {"mileage": _f("6")}))
        ]
        doc_ids = [d.id for d in docs]

    barrier = threading.Barrier(len(doc_ids))
    outcomes = []
    errors = []

    def worker(document_id) -> None:
        try:
            barrier.wait()
            with SessionLocal() as session:
                document = session.get(UploadedDocument, document_id)
                outcomes.append(_route(session, document, cache))
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in doc_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert len({o.trip_id for o in outcomes}) == 1
    with SessionLocal() as session:
        trip = session.get(Trip, outcomes[0].trip_id)
        assert trip.version == 3
        assert trip.state == TripState.COMPLETE
        assert trip.tip_variance == Decimal("4.25")
        sequences = sorted(
            session.scalars(
                select(UploadedDocument.merge_sequence).where(UploadedDocument.trip_id == trip.id)
            )
        )
        assert sequences == [1, 2, 3]


def test_completion_invalidates_cached_results_for_the_trip(screenshot_bytes, cache):
    with SessionLocal() as session:
        offer = _admit(session, screenshot_bytes("o"), filename="o.png", fields=ESTIMATE)
        outcome = _route(session, offer, cache)

        value, result = trip_insights(session, trip_id=outcome.trip_id, cache=cache)
        assert not result.hit
        assert value["state"] == "PARTIAL"
        assert value["data_completeness"]["completeness_percentage"] == 40

        final = _admit(session, screenshot_bytes("s"), filename="s.png", fields=SETTLEMENT)
        _route(session, final, cache)

        stale = session.scalar(select(CacheEntry).where(CacheEntry.key == result.key))
        assert stale.invalidated_at is not None

        value, result = trip_insights(session, trip_id=outcome.trip_id, cache=cache)
        assert not result.hit
        assert value["state"] == "COMPLETE"
        assert value["variance_accuracy"] == "over"
        assert "Paid $4.25 more than the offer estimate" in value["insights"]

        _, again = trip_insights(session, trip_id=outcome.trip_id, cache=cache)
        assert again.hit


def test_insights_collision_returns_fresh_value_and_opens_review(
    screenshot_bytes, cache, monkeypatch
):
    get_or_compute = cache.get_or_compute

    def raced(key, compute_fn, **kwargs):
        def compute():
            cache.store.put(
                key, value_json=canonical_json({"stale": True}), compute_ms=1, expires_at=None
            )
            return compute_fn()

        return get_or_compute(key, compute, **kwargs)

    monkeypatch.setattr(cache, "get_or_compute", raced)
    with SessionLocal() as session:
        offer = _admit(session, screenshot_bytes("o"), filename="o.png", fields=ESTIMATE)
        outcome = _route(session, offer, cache)

        value, result = trip_insights(session, trip_id=outcome.trip_id, cache=cache)
        assert result.needs_attention
        assert not result.hit
        assert value["state"] == "PARTIAL"
        assert "stale" not in value

        task = session.scalar(
            select(ReviewTask).where(ReviewTask.type == ReviewTaskType.CACHE_KEY_COLLISION)
        )
        assert task.status == ReviewTaskStatus.OPEN
        assert task.trip_id == outcome.trip_id
        assert task.subject == result.key
