"""
Canonical JSON encoding for ledger payloads.

Two encodings of the same logical result must be byte-identical so the
content hash is reproducible:
- mapping keys sorted, ``None`` values omitted
- volatile keys (timestamps, latencies) dropped
- floats rounded to ``FLOAT_PRECISION`` places, ``-0.0`` folded to ``0.0``
- NaN / infinity rejected
"""

import dataclasses
import hashlib
import json
import math
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel

from pickcast.errors import ValidationFailedError

FLOAT_PRECISION: int = 10


def normalize(value: Any, volatile_keys: frozenset = frozenset()) -> Any:
    """Reduce ``value`` to plain JSON types in canonical form."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, Enum):
        return normalize(value.value, volatile_keys)
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        number = float(value)
        if math.isnan(number) or math.isinf(number):
            raise ValidationFailedError("Non-finite number in payload", value=value)
        number = round(number, FLOAT_PRECISION)
        return 0.0 if number == 0 else number
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return normalize(value.model_dump(), volatile_keys)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return normalize(dataclasses.asdict(value), volatile_keys)
    if isinstance(value, dict):
        return {
            str(k): normalize(v, volatile_keys)
            for k, v in value.items()
            if v is not None and str(k) not in volatile_keys
        }
    if isinstance(value, (set, frozenset)):
        items = [normalize(v, volatile_keys) for v in value]
        return sorted(items, key=lambda x: json.dumps(x, sort_keys=True))
    if isinstance(value, (list, tuple)):
        return [normalize(v, volatile_keys) for v in value]
    raise ValidationFailedError(
        f"Unsupported payload type: {type(value).__name__}", value=repr(value),
    )


def canonical_json(value: Any, volatile_keys: Iterable[str] = ()) -> str:
    """Serialize ``value`` into its canonical JSON text."""
    return json.dumps(
        normalize(value, frozenset(volatile_keys)),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def content_hash(text: str) -> str:
    """SHA-256 hex digest of canonical JSON text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
