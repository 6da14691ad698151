from __future__ import annotations

from decimal import Decimal

import pytest

from farecheck.modules.trips.models import Trip, VarianceAccuracy
from farecheck.modules.trips.variance import apply_variance, compute_variance

EPS = Decimal("0.25")


@pytest.mark.parametrize(
    ("estimate", "settlement", "variance", "accuracy"),
    [
        ("18.50", "22.75", "4.25", VarianceAccuracy.OVER),
        ("18.50", "14.00", "-4.50", VarianceAccuracy.UNDER),
        ("18.50", "18.75", "0.25", VarianceAccuracy.EXACT),
        ("18.50", "18.24", "-0.26", VarianceAccuracy.UNDER),
    ],
)
def test_compute_variance(estimate, settlement, variance, accuracy):
    result = compute_variance(Decimal(estimate), Decimal(settlement), epsilon=EPS)
    assert result.variance == Decimal(variance)
    assert result.accuracy == accuracy


@pytest.mark.parametrize(
    ("estimate", "settlement"),
    [(None, Decimal("22.75")), (Decimal("18.50"), None), (Decimal("0"), Decimal("22.75"))],
)
def test_variance_is_undefined_without_both_positive_amounts(estimate, settlement):
    assert compute_variance(estimate, settlement, epsilon=EPS) is None


def test_apply_variance_withholds_while_reconciliation_is_pending():
    trip = Trip(
        estimate_amount=Decimal("18.50"),
        settlement_amount=Decimal("22.75"),
        needs_reconciliation=False,
    )
    assert apply_variance(trip, epsilon=EPS) is not None
    assert trip.tip_variance == Decimal("4.25")

    trip.needs_reconciliation = True
    assert apply_variance(trip, epsilon=EPS) is None
    assert trip.tip_variance is None
    assert trip.variance_accuracy is None
