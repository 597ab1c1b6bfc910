"""Client Engine kernel utilities."""

from .lock_keys import lock_key, lock_name
from .payloads import PayloadError, encode_payload, validate_payload

__all__ = [
    "PayloadError",
    "encode_payload",
    "lock_key",
    "lock_name",
    "validate_payload",
]
