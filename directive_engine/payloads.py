"""Payload bounds and JSON-safety checks.

Signal payloads, directive payloads, handler results and error maps are all
persisted as JSON. They must be JSON-safe (no NaN, no arbitrary objects) and
within ``Settings.max_payload_bytes`` measured as compact UTF-8 JSON.
Oversized payloads are rejected, never truncated.
"""
from __future__ import annotations

import json
from typing import Any, Mapping, Optional

from directive_engine.errors import ValidationError


def encode_compact(value: Any) -> str:
    """Serialize ``value`` the way sizes are measured (compact, sorted keys)."""
    return json.dumps(value, separators=(",", ":"), sort_keys=True, allow_nan=False)


def payload_size(value: Any) -> int:
    """Return the size in bytes of ``value`` encoded as compact JSON.

    Example:
        >>> payload_size({"a": 1})
        7
    """
    return len(encode_compact(value).encode("utf-8"))


def ensure_bounded_map(value: Optional[Mapping[str, Any]], max_bytes: int, *, field: str = "payload") -> dict[str, Any]:
    """Return a plain JSON-safe dict copy of ``value`` or raise ``ValidationError``.

    ``None`` becomes ``{}``. Non-mapping values, values that cannot be encoded
    as JSON, and values larger than ``max_bytes`` are rejected.
    """
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"{field} must be a JSON object", details={"field": field})
    try:
        encoded = encode_compact(dict(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} is not JSON-safe: {exc}", details={"field": field}) from exc
    size = len(encoded.encode("utf-8"))
    if size > max_bytes:
        raise ValidationError(
            f"{field} exceeds {max_bytes} bytes",
            details={"field": field, "size": size, "max_bytes": max_bytes},
        )
    # Round-trip so callers hold exactly what will be stored
    return json.loads(encoded)
