from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))


def _to_json_ready(value: Any) -> Any:
    """Reduce pydantic models, enums and datetimes to JSON primitives for rfc8785.

    Raises:
        TypeError: If *value* holds something with no JSON form.
    """
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _to_json_ready(value.model_dump(mode="json", by_alias=True))
    if isinstance(value, Enum):
        return _to_json_ready(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(_to_json_ready(key)): _to_json_ready(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_ready(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_to_json_ready(item) for item in value)
    raise TypeError(f"Cannot canonicalize value of type {type(value).__name__}")


def to_canonical_json(value: Any) -> str:
    """Serialize *value* as RFC 8785 canonical JSON (sorted keys, no whitespace)."""
    return rfc8785.dumps(_to_json_ready(value)).decode("utf-8")


def fingerprint(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of *value*."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
