"""Stable advisory lock keys.

Postgres advisory locks take a signed 64-bit integer. Entity ids are hashed
under a namespace so every lock name maps to one key, whatever the id length.
"""

from __future__ import annotations

import hashlib

_MAX_KEY = 2**63


def lock_name(namespace: str, entity_id: str) -> str:
    if not isinstance(namespace, str) or not namespace:
        raise ValueError("namespace must be a non-empty string")
    if not isinstance(entity_id, str) or not entity_id:
        raise ValueError("entity_id must be a non-empty string")
    return f"{namespace}:{entity_id}"


def lock_key(namespace: str, entity_id: str) -> int:
    raw = lock_name(namespace, entity_id).encode("utf-8")
    value = int.from_bytes(hashlib.sha1(raw).digest()[:8], "big", signed=False)
    if value >= _MAX_KEY:
        value -= _MAX_KEY
    return value
