from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from farecheck.modules.classification.classifier import ESTIMATE_FIELDS, SETTLEMENT_FIELDS
from farecheck.modules.recognition.fields import parse_amount
from farecheck.modules.trips.models import Trip, TripState

_CENTS = Decimal("0.01")


def _q(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


def field_amount(fields: dict[str, Any], names: Iterable[str]) -> Decimal | None:
    """First parsable amount among ``names`` in preference order."""
    for name in names:
        raw = fields.get(name)
        if not isinstance(raw, dict):
            continue
        amount = parse_amount(raw.get("value"))
        if amount is not None:
            return amount
    return None


def has_any(fields: dict[str, Any], names: Iterable[str]) -> bool:
    return any(name in fields for name in names)


def implied_state(merged_fields: dict[str, Any]) -> TripState:
    has_estimate = has_any(merged_fields, ESTIMATE_FIELDS)
    has_settlement = has_any(merged_fields, SETTLEMENT_FIELDS)
    if has_estimate and has_settlement:
        return TripState.COMPLETE
    if has_estimate or has_settlement:
        return TripState.PARTIAL
    return TripState.INCOMPLETE


def trip_distance(
    merged_fields: dict[str, Any], odometer_readings: list[Decimal]
) -> Decimal | None:
    distance = field_amount(merged_fields, ("distance_miles", "mileage"))
    if distance is not None and distance > 0:
        return distance
    if len(odometer_readings) >= 2:
        spread = max(odometer_readings) - min(odometer_readings)
        if spread > 0:
            return _q(spread)
    return None


def recompute_metrics(
    trip: Trip,
    *,
    odometer_readings: list[Decimal],
    vehicle_mpg: Decimal,
    fuel_price_per_gallon: Decimal,
) -> None:
    """Refresh amounts and profit figures from the merged field set; unknowns stay None."""
    fields = trip.merged_fields or {}
    trip.estimate_amount = field_amount(fields, ESTIMATE_FIELDS)
    # Conflicting settlement claims never reach merged_fields, see aggregator.
    trip.settlement_amount = field_amount(fields, SETTLEMENT_FIELDS)
    trip.estimated_tip = field_amount(fields, ("estimated_tip",))
    trip.actual_tip = field_amount(fields, ("actual_tip",))
    trip.duration_minutes = field_amount(fields, ("duration_minutes",))

    distance = trip_distance(fields, odometer_readings)
    trip.distance_miles = distance
    trip.fuel_cost = None
    trip.net_profit = None
    trip.profit_per_mile = None
    if distance is None or vehicle_mpg <= 0:
        return

    trip.fuel_cost = _q(distance / vehicle_mpg * fuel_price_per_gallon)
    if trip.settlement_amount is None:
        return
    trip.net_profit = _q(trip.settlement_amount - trip.fuel_cost)
    trip.profit_per_mile = _q(trip.net_profit / distance)
