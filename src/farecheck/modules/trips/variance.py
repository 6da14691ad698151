from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from farecheck.modules.trips.models import Trip, VarianceAccuracy


@dataclass(frozen=True)
class TipVariance:
    variance: Decimal
    accuracy: VarianceAccuracy


def compute_variance(
    estimate_amount: Decimal | None,
    settlement_amount: Decimal | None,
    *,
    epsilon: Decimal,
) -> TipVariance | None:
    """
    settlement - estimate, classified against an absolute tolerance.

    Small and large trips are held to the same cents-level bar, so epsilon is
    an amount rather than a percentage.
    """
    if estimate_amount is None or settlement_amount is None:
        return None
    if estimate_amount <= 0 or settlement_amount <= 0:
        return None

    variance = settlement_amount - estimate_amount
    if abs(variance) <= epsilon:
        accuracy = VarianceAccuracy.EXACT
    elif variance > 0:
        accuracy = VarianceAccuracy.OVER
    else:
        accuracy = VarianceAccuracy.UNDER
    return TipVariance(variance=variance, accuracy=accuracy)


def apply_variance(trip: Trip, *, epsilon: Decimal) -> TipVariance | None:
    # Conflicting settlements: refuse rather than pick one.
    result = None
    if not trip.needs_reconciliation:
        result = compute_variance(trip.estimate_amount, trip.settlement_amount, epsilon=epsilon)
    trip.tip_variance = result.variance if result else None
    trip.variance_accuracy = result.accuracy if result else None
    return result
