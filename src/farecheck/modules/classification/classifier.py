from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class DocumentType(str, enum.Enum):
    OFFER_ESTIMATE = "offer_estimate"
    FINAL_SETTLEMENT = "final_settlement"
    ODOMETER_READING = "odometer_reading"
    UNCLASSIFIED = "unclassified"


# Ordered by preference: the first present name is the one a trip reads its amount from.
ESTIMATE_FIELDS: tuple[str, ...] = ("estimated_total", "estimated_fare")
SETTLEMENT_FIELDS: tuple[str, ...] = ("total_earnings", "final_total")
ODOMETER_FIELDS: tuple[str, ...] = ("odometer_reading", "mileage")

MONETARY_FIELDS: frozenset[str] = frozenset(
    {
        *ESTIMATE_FIELDS,
        *SETTLEMENT_FIELDS,
        "estimated_tip",
        "actual_tip",
        "final_fare",
        "base_fare",
        "fees",
        "bonus",
    }
)

# What a complete screenshot of each kind normally shows.
EXPECTED_FIELDS: dict[DocumentType, tuple[str, ...]] = {
    DocumentType.OFFER_ESTIMATE: (
        "estimated_total",
        "estimated_tip",
        "distance_miles",
        "duration_minutes",
        "pickup_location",
        "dropoff_location",
    ),
    DocumentType.FINAL_SETTLEMENT: (
        "total_earnings",
        "actual_tip",
        "base_fare",
        "duration_minutes",
    ),
    DocumentType.ODOMETER_READING: ("odometer_reading",),
    DocumentType.UNCLASSIFIED: (),
}

# Either member of a group satisfies the group.
_ALIASES: dict[str, tuple[str, ...]] = {
    "estimated_total": ESTIMATE_FIELDS,
    "total_earnings": SETTLEMENT_FIELDS,
    "odometer_reading": ODOMETER_FIELDS,
}


@dataclass(frozen=True)
class Classification:
    document_type: DocumentType
    confidence: float
    missing_expected_fields: list[str] = field(default_factory=list)
    decision_fields: list[str] = field(default_factory=list)

    def is_ambiguous(self, confidence_floor: float) -> bool:
        if self.document_type == DocumentType.UNCLASSIFIED:
            return True
        return self.confidence < confidence_floor


def _present(fields: dict[str, Any], names) -> list[str]:
    return [name for name in names if name in fields]


def _min_confidence(fields: dict[str, Any], names: list[str]) -> float:
    values = []
    for name in names:
        raw = fields[name]
        conf = raw.get("confidence") if isinstance(raw, dict) else None
        values.append(float(conf) if conf is not None else 0.0)
    return min(values) if values else 0.0


def classify(candidate_fields: dict[str, Any]) -> Classification:
    """
    Rule-based document type from which fields are present.

    Expects already-normalized fields (absent means absent). Confidence is the
    minimum over the fields that drove the decision, so one weak field is never
    hidden behind several strong ones.
    """
    fields = candidate_fields or {}
    estimate = _present(fields, ESTIMATE_FIELDS)
    settlement = _present(fields, SETTLEMENT_FIELDS)
    odometer = _present(fields, ODOMETER_FIELDS)
    monetary = [name for name in fields if name in MONETARY_FIELDS]

    if settlement:
        doc_type, decision = DocumentType.FINAL_SETTLEMENT, settlement
    elif estimate:
        doc_type, decision = DocumentType.OFFER_ESTIMATE, estimate
    elif odometer and not monetary:
        doc_type, decision = DocumentType.ODOMETER_READING, odometer
    else:
        doc_type, decision = DocumentType.UNCLASSIFIED, []

    missing = []
    for name in EXPECTED_FIELDS[doc_type]:
        if not _present(fields, _ALIASES.get(name, (name,))):
            missing.append(name)

    return Classification(
        document_type=doc_type,
        confidence=_min_confidence(fields, decision),
        missing_expected_fields=missing,
        decision_fields=list(decision),
    )
