from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from farecheck.core.models import as_utc
from farecheck.modules.trips.models import Trip

_CENTS = Decimal("0.01")

# (label, first hour, last hour exclusive); hours outside all of these are late night.
TIME_PERIODS: tuple[tuple[str, int, int], ...] = (
    ("Morning Rush", 6, 10),
    ("Lunch", 10, 14),
    ("Afternoon", 14, 17),
    ("Evening Rush", 17, 21),
    ("Late Evening", 21, 24),
)
LATE_NIGHT = "Late Night"


def _dec(value: str | None) -> Decimal | None:
    return None if value is None else Decimal(value)


def _money(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(value.quantize(_CENTS, rounding=ROUND_HALF_UP))


def _ratio(numerator: Decimal, denominator: Decimal) -> str | None:
    if not denominator:
        return None
    return _money(numerator / denominator)


def analysis_snapshot(trip: Trip) -> dict[str, Any]:
    """Values an aggregate needs, copied out of the ORM object for the worker pool."""

    def s(value: Decimal | None) -> str | None:
        return None if value is None else str(value)

    return {
        "trip_id": str(trip.id),
        "version": trip.version,
        "started_at": as_utc(trip.started_at).isoformat() if trip.started_at else None,
        "state": trip.state.value,
        "estimate_amount": s(trip.estimate_amount),
        "settlement_amount": s(trip.settlement_amount),
        "distance_miles": s(trip.distance_miles),
        "duration_minutes": s(trip.duration_minutes),
        "fuel_cost": s(trip.fuel_cost),
        "tip_variance": s(trip.tip_variance),
        "variance_accuracy": trip.variance_accuracy.value if trip.variance_accuracy else None,
        "needs_reconciliation": bool(trip.needs_reconciliation),
    }


class _Bucket:
    def __init__(self) -> None:
        self.trip_count = 0
        self.paid_count = 0
        self.earnings = Decimal("0")
        self.estimated = Decimal("0")
        self.fuel_cost = Decimal("0")
        self.distance = Decimal("0")
        self.minutes = Decimal("0")

    def add(self, snap: dict[str, Any]) -> None:
        self.trip_count += 1
        settlement = _dec(snap["settlement_amount"])
        if settlement is not None:
            self.paid_count += 1
            self.earnings += settlement
        self.estimated += _dec(snap["estimate_amount"]) or Decimal("0")
        # Trips without a known distance contribute no fuel cost.
        self.fuel_cost += _dec(snap["fuel_cost"]) or Decimal("0")
        self.distance += _dec(snap["distance_miles"]) or Decimal("0")
        self.minutes += _dec(snap["duration_minutes"]) or Decimal("0")

    @property
    def net_profit(self) -> Decimal:
        return self.earnings - self.fuel_cost

    def summary(self) -> dict[str, Any]:
        return {
            "trip_count": self.trip_count,
            "paid_trip_count": self.paid_count,
            "earnings": _money(self.earnings),
            "estimated": _money(self.estimated),
            "fuel_cost": _money(self.fuel_cost),
            "net_profit": _money(self.net_profit),
            "distance_miles": _money(self.distance),
            "duration_minutes": _money(self.minutes),
            "earnings_per_trip": _ratio(self.earnings, Decimal(self.paid_count)),
            "net_profit_per_trip": _ratio(self.net_profit, Decimal(self.paid_count)),
            "earnings_per_mile": _ratio(self.earnings, self.distance),
            "net_profit_per_mile": _ratio(self.net_profit, self.distance),
            "earnings_per_hour": _ratio(self.earnings * 60, self.minutes),
        }


def _variance_summary(snaps: list[dict[str, Any]]) -> dict[str, Any]:
    counts = {"exact": 0, "over": 0, "under": 0}
    total = Decimal("0")
    n = 0
    for snap in snaps:
        accuracy = snap["variance_accuracy"]
        if accuracy is None:
            continue
        counts[accuracy] += 1
        total += Decimal(snap["tip_variance"])
        n += 1
    return {
        "count": n,
        "total": _money(total),
        "average": _ratio(total, Decimal(n)),
        "by_accuracy": counts,
        "needs_reconciliation": sum(1 for s in snaps if s["needs_reconciliation"]),
    }


def _started(snap: dict[str, Any]) -> datetime:
    return datetime.fromisoformat(snap["started_at"])


def _period_for(hour: int) -> str:
    for label, first, last in TIME_PERIODS:
        if first <= hour < last:
            return label
    return LATE_NIGHT


def compute_aggregates(
    *, kind: str, range_start: datetime, range_end: datetime, snapshots: list[dict[str, Any]]
) -> dict[str, Any]:
    """Totals, per-unit rates and best/worst days over trip snapshots. Pure."""
    snaps = sorted(snapshots, key=lambda s: (s["started_at"] or "", s["trip_id"]))

    overall = _Bucket()
    days: dict[str, _Bucket] = defaultdict(_Bucket)
    for snap in snaps:
        overall.add(snap)
        if snap["started_at"]:
            days[_started(snap).date().isoformat()].add(snap)

    by_day = [{"date": day, **days[day].summary()} for day in sorted(days)]
    ranked = sorted(
        (row for row in by_day if row["paid_trip_count"]),
        key=lambda row: (Decimal(row["net_profit"]), row["date"]),
    )

    payload: dict[str, Any] = {
        "kind": kind,
        "range_start": as_utc(range_start).isoformat(),
        "range_end": as_utc(range_end).isoformat(),
        "trip_ids": [s["trip_id"] for s in snaps],
        "complete_trip_count": sum(1 for s in snaps if s["state"] == "COMPLETE"),
        "totals": overall.summary(),
        "variance": _variance_summary(snaps),
        "by_day": by_day,
        "best_day": ranked[-1] if ranked else None,
        "worst_day": ranked[0] if ranked else None,
    }
    if kind == "COMPARISON":
        payload["comparison"] = _comparison(range_start, range_end, snaps)
    return payload


def _comparison(
    range_start: datetime, range_end: datetime, snaps: list[dict[str, Any]]
) -> dict[str, Any]:
    periods: dict[str, _Bucket] = {label: _Bucket() for label, _, _ in TIME_PERIODS}
    periods[LATE_NIGHT] = _Bucket()
    midpoint = as_utc(range_start) + (as_utc(range_end) - as_utc(range_start)) / 2
    first, second = _Bucket(), _Bucket()
    for snap in snaps:
        if not snap["started_at"]:
            continue
        started = _started(snap)
        periods[_period_for(started.hour)].add(snap)
        (first if started < midpoint else second).add(snap)

    period_rows = [
        {"period": label, **bucket.summary()} for label, bucket in periods.items()
    ]
    busiest = [row for row in period_rows if row["paid_trip_count"]]
    best_period = max(
        busiest, key=lambda row: (Decimal(row["earnings_per_trip"]), row["period"]), default=None
    )

    change = second.earnings - first.earnings
    return {
        "midpoint": midpoint.isoformat(),
        "time_periods": period_rows,
        "best_period": best_period["period"] if best_period else None,
        "first_half": first.summary(),
        "second_half": second.summary(),
        "earnings_change": _money(change),
        "earnings_change_pct": _ratio(change * 100, first.earnings),
    }
