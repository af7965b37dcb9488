"""
labstore — hashing and canonical serialization

File: src/labstore/utils/hashing.py

Purpose
- Canonical JSON so that equal payloads always hash equally.
- SHA-256 helpers for backup checksums and migration checksums.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal

__all__ = [
    "canonical_json",
    "sha256_bytes",
    "sha256_text",
]


def canonical_json(value: object) -> str:
    """Deterministic JSON: sorted keys, compact separators, UTF-8 preserved."""

    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    return sha256_bytes(text.encode(encoding))


def _json_default(value: object) -> object:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if isinstance(value, bytes):
        return value.hex()
    raise TypeError(f"value of type {type(value).__name__} is not JSON serializable")
