from __future__ import annotations

import json
import logging
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert Python/Pydantic values into JSON-primitive types.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, UUID):
        return str(value)

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic JSON per RFC 8785.

    Every JSON column in the pipeline database is written through this
    function so equal documents are stored byte-for-byte identically.

    Raises:
        TypeError: If value contains an unsupported type.
        rfc8785.CanonicalizationError: If rfc8785 rejects the normalized value.
    """
    normalized = _normalize_for_jcs(value)
    return rfc8785.dumps(normalized).decode("utf-8")


def load_document(text: str, label: str) -> Any:
    """Parse a stored JSON column, naming the owning row on failure.

    Raises:
        ValueError: If the text is empty or not valid JSON.
    """
    if not text or not text.strip():
        raise ValueError(f"{label} is empty")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("Corrupt JSON document in %s", label)
        raise ValueError(f"{label} contains invalid JSON: {exc.msg}") from exc
