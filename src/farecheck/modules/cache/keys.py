from __future__ import annotations

import enum
import hashlib
import json
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from farecheck.core.models import as_utc


def _canonical_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        # 18.5 and 18.50 are the same input
        return format(obj.normalize(), "f")
    if isinstance(obj, datetime):
        return as_utc(obj).isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, uuid.UUID):
        return str(obj)
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    raise TypeError(f"Not canonically serializable: {type(obj).__name__}")


def canonical_json(obj: Any) -> str:
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        allow_nan=False,
        default=_canonical_default,
    )


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheKey:
    operation: str
    digest: str
    trip_ids: tuple[uuid.UUID, ...] = ()


def cache_key(
    operation: str,
    params: dict[str, Any],
    *,
    trips: Iterable[tuple[uuid.UUID, int]] = (),
) -> CacheKey:
    """
    Deterministic key over the logical inputs of a computation.

    Trip-derived computations pass ``(trip_id, version)`` pairs, so any merge
    into one of those trips yields a different key.
    """
    trip_pairs = sorted((str(trip_id), int(version)) for trip_id, version in trips)
    material = canonical_json({"operation": operation, "params": params, "trips": trip_pairs})
    return CacheKey(
        operation=operation,
        digest=sha256_hex(material),
        trip_ids=tuple(uuid.UUID(trip_id) for trip_id, _ in trip_pairs),
    )
