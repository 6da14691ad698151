from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from farecheck.modules.classification.classifier import MONETARY_FIELDS, ODOMETER_FIELDS

_AMOUNT_RE = re.compile(r"-?\d[\d,. ]*")

# Fields whose value is a number; one that does not parse was not really read.
NUMERIC_FIELDS: frozenset[str] = frozenset(
    {*MONETARY_FIELDS, *ODOMETER_FIELDS, "distance_miles", "duration_minutes", "fuel_level"}
)


def parse_amount(value: Any) -> Decimal | None:
    """Parse "$18.50", "18,50", "1,234.56" or 18.5 into a 2dp Decimal."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        m = _AMOUNT_RE.search(str(value).replace("\xa0", " "))
        if not m:
            return None
        raw = m.group(0).replace(" ", "").rstrip(".,")
        if "," in raw and "." in raw:
            # whichever separator comes last is the decimal point
            if raw.rfind(",") > raw.rfind("."):
                raw = raw.replace(".", "").replace(",", ".")
            else:
                raw = raw.replace(",", "")
        elif "," in raw:
            head, _, tail = raw.rpartition(",")
            # "18,5" and "18,50" are decimal commas; "1,234" is a thousands group.
            if len(tail) in (1, 2):
                raw = f"{head.replace(',', '')}.{tail}"
            else:
                raw = raw.replace(",", "")
        try:
            amount = Decimal(raw)
        except InvalidOperation:
            return None
    if not amount.is_finite():
        return None
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _confidence(raw: Any) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        conf = float(raw)
    except (TypeError, ValueError):
        return None
    if conf != conf:  # NaN
        return None
    return max(0.0, min(1.0, conf))


def normalize_candidate_fields(
    candidates: dict[str, Any], *, confidence_floor: float
) -> dict[str, dict[str, Any]]:
    """
    Drop what the oracle did not really see.

    Missing values, empty strings, numeric fields that do not parse and fields
    under the confidence floor are treated as absent; they are never coerced
    to a typed zero.
    """
    out: dict[str, dict[str, Any]] = {}
    for name, raw in (candidates or {}).items():
        if not isinstance(raw, dict):
            continue
        value = raw.get("value")
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        if name in NUMERIC_FIELDS and parse_amount(value) is None:
            continue
        conf = _confidence(raw.get("confidence"))
        if conf is None or conf < confidence_floor:
            continue
        out[str(name)] = {"value": value, "confidence": conf}
    return out
