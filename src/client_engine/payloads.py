"""Validation for job payloads, schedule templates and domain event payloads.

A payload is a JSON object built from plain values. Validation reports the
first offending location as a JSONPath-like string (``$.meta.tags[2]``) and
caps the encoded size, so nothing that reaches a ``jsonb`` column or a worker
can surprise the other side.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any

DEFAULT_MAX_BYTES = 64 * 1024


@dataclass
class PayloadError(Exception):
    code: str
    message: str
    path: str = "$"

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} at {self.path}"


def _walk(value: Any, path: str) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise PayloadError("PAYLOAD_KEY_INVALID", f"object keys must be strings, got {type(key).__name__}", path)
            _walk(item, f"{path}.{key}")
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _walk(item, f"{path}[{index}]")
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise PayloadError("PAYLOAD_NUMBER_INVALID", f"non-finite number {value!r}", path)
    elif value is not None and not isinstance(value, (str, int, bool)):
        raise PayloadError("PAYLOAD_TYPE_INVALID", f"unsupported value of type {type(value).__name__}", path)


def encode_payload(value: Any) -> str:
    """Stable encoding: sorted keys, compact separators, non-ASCII kept."""
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def validate_payload(value: Any, max_bytes: int | None = DEFAULT_MAX_BYTES) -> str:
    """Check ``value`` is a plain JSON object within ``max_bytes``; return its encoding."""
    if not isinstance(value, dict):
        raise PayloadError("PAYLOAD_INVALID", "payload must be an object")
    _walk(value, "$")
    encoded = encode_payload(value)
    if max_bytes is not None:
        size = len(encoded.encode("utf-8"))
        if size > max_bytes:
            raise PayloadError("PAYLOAD_TOO_LARGE", f"payload is {size} bytes, limit is {max_bytes}")
    return encoded
