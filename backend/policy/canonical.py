"""
Canonical payload form and the hashes derived from it.

Two digests come out of the same canonical JSON:
  - payload hash: content only, for "is this the same policy body?"
  - idempotency key: content + actor + request timestamp, for
    "is this the same request, retried?"
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

VOLATILE_FIELDS = frozenset({"created_at", "updated_at", "id", "timestamp", "correlationId", "eventId"})


def canonicalize(payload: Any) -> Any:
    """Sort keys, drop volatile fields and sort list elements, recursively."""
    if isinstance(payload, dict):
        return {
            str(key): canonicalize(payload[key])
            for key in sorted(payload, key=str)
            if str(key) not in VOLATILE_FIELDS
        }
    if isinstance(payload, (list, tuple, set, frozenset)):
        items = [canonicalize(item) for item in payload]
        return sorted(items, key=_sort_key)
    if isinstance(payload, Enum):
        return payload.value
    if isinstance(payload, datetime):
        return payload.isoformat()
    if isinstance(payload, date):
        return payload.isoformat()
    if isinstance(payload, Decimal):
        return float(payload)
    return payload


def _sort_key(item: Any) -> str:
    return json.dumps(item, sort_keys=True, separators=(",", ":"), default=str)


def canonical_json(payload: Any) -> str:
    return json.dumps(canonicalize(payload), sort_keys=True, separators=(",", ":"), default=str)


def hash_payload(payload: Any) -> str:
    """SHA-256 of the canonical JSON; order-insensitive."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def idempotency_key(payload: Any, actor_id: str, timestamp: datetime | str) -> str:
    if isinstance(timestamp, datetime):
        timestamp = timestamp.isoformat()
    combined = f"{canonical_json(payload)}:{actor_id}:{timestamp}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()


def coarse_timestamp(moment: datetime, granularity_seconds: int = 60) -> datetime:
    """Floor ``moment`` to the idempotency window it falls in."""
    if granularity_seconds <= 1:
        return moment.replace(microsecond=0)
    epoch = datetime(1970, 1, 1, tzinfo=moment.tzinfo)
    elapsed = int((moment - epoch).total_seconds())
    return epoch + timedelta(seconds=elapsed - elapsed % granularity_seconds)
