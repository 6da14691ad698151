from __future__ import annotations

from decimal import Decimal
from typing import Any

from farecheck.modules.classification.classifier import ESTIMATE_FIELDS, SETTLEMENT_FIELDS
from farecheck.modules.trips.metrics import has_any
from farecheck.modules.trips.models import Trip

# Share of a full picture each kind of screenshot contributes.
_COMPLETENESS_WEIGHTS = (
    ("offer_estimate", 40),
    ("final_settlement", 40),
    ("distance", 20),
)


def _money(value: Decimal | None) -> str | None:
    return None if value is None else f"{value:.2f}"


def trip_snapshot(trip: Trip) -> dict[str, Any]:
    """Plain, thread-safe copy of everything insights are derived from."""
    return {
        "trip_id": str(trip.id),
        "version": trip.version,
        "state": trip.state.value,
        "merged_fields": dict(trip.merged_fields or {}),
        "estimate_amount": _money(trip.estimate_amount),
        "settlement_amount": _money(trip.settlement_amount),
        "estimated_tip": _money(trip.estimated_tip),
        "actual_tip": _money(trip.actual_tip),
        "distance_miles": _money(trip.distance_miles),
        "fuel_cost": _money(trip.fuel_cost),
        "net_profit": _money(trip.net_profit),
        "tip_variance": _money(trip.tip_variance),
        "variance_accuracy": trip.variance_accuracy.value if trip.variance_accuracy else None,
        "needs_reconciliation": bool(trip.needs_reconciliation),
    }


def build_insights(snapshot: dict[str, Any]) -> dict[str, Any]:
    fields = snapshot["merged_fields"]
    present = {
        "offer_estimate": has_any(fields, ESTIMATE_FIELDS),
        "final_settlement": has_any(fields, SETTLEMENT_FIELDS),
        "distance": snapshot["distance_miles"] is not None,
    }
    available = [name for name, _ in _COMPLETENESS_WEIGHTS if present[name]]
    missing = [name for name, _ in _COMPLETENESS_WEIGHTS if not present[name]]
    completeness = sum(weight for name, weight in _COMPLETENESS_WEIGHTS if present[name])

    lines: list[str] = []
    accuracy = snapshot["variance_accuracy"]
    variance = snapshot["tip_variance"]
    if snapshot["needs_reconciliation"]:
        lines.append("Settlement screenshots disagree; variance is withheld until reconciled")
    elif accuracy == "over":
        lines.append(f"Paid ${Decimal(variance):.2f} more than the offer estimate")
    elif accuracy == "under":
        lines.append(f"Paid ${abs(Decimal(variance)):.2f} less than the offer estimate")
    elif accuracy == "exact":
        lines.append("Payout matched the offer estimate")

    if snapshot["estimated_tip"] is not None and snapshot["actual_tip"] is not None:
        tip_delta = Decimal(snapshot["actual_tip"]) - Decimal(snapshot["estimated_tip"])
        if tip_delta > 0:
            lines.append(f"Customer tipped ${tip_delta:.2f} more than estimated")
        elif tip_delta < 0:
            lines.append(f"Customer tipped ${abs(tip_delta):.2f} less than estimated")
        else:
            lines.append("Tip matched the estimate")

    if snapshot["fuel_cost"] is not None:
        lines.append(
            f"Fuel cost ${snapshot['fuel_cost']} for {snapshot['distance_miles']} miles"
        )
    if snapshot["net_profit"] is not None:
        lines.append(f"Net profit after fuel: ${snapshot['net_profit']}")

    if present["offer_estimate"] and not present["final_settlement"]:
        lines.append("Upload the final earnings screenshot to complete the variance check")
    if present["final_settlement"] and not present["offer_estimate"]:
        lines.append("Upload the offer screenshot to see how accurate the estimate was")

    if snapshot["needs_reconciliation"]:
        recommendation = "Resolve the conflicting settlement screenshots before trusting totals."
    elif accuracy == "under":
        recommendation = (
            "Payout came in under the offer. Check for cancelled add-ons or adjusted tips."
        )
    elif accuracy in {"over", "exact"}:
        recommendation = "Estimates for this trip were reliable."
    else:
        recommendation = "Upload both the offer and final earnings screenshots for a full analysis."

    return {
        "trip_id": snapshot["trip_id"],
        "version": snapshot["version"],
        "state": snapshot["state"],
        "data_completeness": {
            "completeness_percentage": completeness,
            "available_data": available,
            "missing_data": missing,
        },
        "insights": lines,
        "recommendation": recommendation,
        "tip_variance": variance,
        "variance_accuracy": accuracy,
    }
