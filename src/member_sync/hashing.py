"""
Deterministic serialization and hashing for change detection.

Payloads coming from the source providers are arbitrary nested structures.
Before hashing they are serialized into a canonical string in which map keys
are sorted, so that two structurally equal payloads always produce the same
hash regardless of key insertion order.
"""

import hashlib
import json
from typing import Any


def stable_stringify(value: Any) -> str:
    """
    Serialize a value into a canonical JSON-compatible string.

    Args:
        value: Any combination of dicts, lists/tuples and JSON scalars

    Returns:
        Canonical string representation

    Raises:
        TypeError: If a dict has a key that is not a string
    """
    if value is None:
        return "null"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(stable_stringify(item) for item in value) + "]"
    if isinstance(value, dict):
        # {1: x} and {"1": x} would otherwise serialize identically
        for key in value:
            if not isinstance(key, str):
                raise TypeError(f"Payload keys must be strings, got {type(key).__name__}: {key!r}")
        entries = [
            f"{json.dumps(key, ensure_ascii=False)}:{stable_stringify(value[key])}"
            for key in sorted(value)
        ]
        return "{" + ",".join(entries) + "}"
    return json.dumps(value, ensure_ascii=False)


def compute_hash(data: str) -> str:
    """Return the SHA-256 hex digest of the UTF-8 encoded string."""
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def compute_payload_hash(payload: Any) -> str:
    """Content hash of a payload: SHA-256 over its stable serialization."""
    return compute_hash(stable_stringify(payload))
