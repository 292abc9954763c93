from __future__ import annotations

import hashlib
import logging
from datetime import date, datetime, time
from enum import Enum
from pathlib import PurePath
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert step inputs and outputs into JSON-primitive types.

    Step results are arbitrary: pydantic payloads returned by cognition,
    plain dicts from collaborators, plain strings from the executor.
    rfc8785 only accepts JSON primitives, so everything is flattened first.

    Raises:
        TypeError: If value contains a type that has no JSON representation.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize_for_jcs(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=lambda item: rfc8785.dumps(item))
        return items

    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, (datetime, date, time)):
        return value.isoformat()

    if isinstance(value, (UUID, PurePath)):
        return str(value)

    if isinstance(value, bytes):
        raise TypeError(
            f"Cannot serialize bytes to canonical JSON. "
            f"Encode to base64 or hex string first: {value!r:.64}"
        )

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785.

    Args:
        value: Any Python value including Pydantic models.

    Returns:
        A UTF-8 string containing the canonicalized JSON representation.

    Raises:
        TypeError: If value contains an unsupported type.
        rfc8785.CanonicalizationError: If rfc8785 rejects the normalized value.
    """
    normalized = _normalize_for_jcs(value)
    return rfc8785.dumps(normalized).decode("utf-8")


def hash_text(text: str) -> str:
    """Return the hex sha256 digest of a UTF-8 string."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def digest(value: Any) -> str:
    """Digest the canonical JSON form of *value*.

    Two semantically equal payloads (same keys in a different order, a model
    versus its dumped dict) always produce the same digest.
    """
    if value is None:
        return hash_text("null")
    return hash_text(to_canonical_json(value))


def to_json_value(value: Any) -> Any:
    """Return the JSON-primitive form of *value* used for artifact payloads."""
    return _normalize_for_jcs(value)
