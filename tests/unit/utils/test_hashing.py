"""Canonical JSON and checksum stability."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from labstore.utils.hashing import canonical_json, sha256_text

_json_values = st.recursive(
    st.none() | st.booleans() | st.integers() | st.text(max_size=8),
    lambda children: st.lists(children, max_size=4) | st.dictionaries(st.text(max_size=4), children, max_size=4),
    max_leaves=12,
)


def test_canonical_json_is_compact_sorted_and_unicode() -> None:
    assert canonical_json({"b": 1, "a": {"d": [1, 2], "c": "ção"}}) == '{"a":{"c":"ção","d":[1,2]},"b":1}'


def test_canonical_json_handles_common_non_json_types() -> None:
    payload = {
        "when": datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        "day": date(2026, 1, 2),
        "amount": Decimal("1.5"),
        "tags": {"b", "a"},
        "raw": b"\x01\xff",
    }

    assert canonical_json(payload) == (
        '{"amount":1.5,"day":"2026-01-02","raw":"01ff","tags":["a","b"],"when":"2026-01-02T03:04:05+00:00"}'
    )


def test_canonical_json_rejects_unknown_objects() -> None:
    with pytest.raises(TypeError, match="not JSON serializable"):
        canonical_json({"value": object()})


def test_sha256_text_known_vector() -> None:
    assert sha256_text("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


@given(_json_values)
def test_property_key_order_never_changes_the_checksum(value: object) -> None:
    if isinstance(value, dict):
        reordered = dict(reversed(list(value.items())))
        assert sha256_text(canonical_json(reordered)) == sha256_text(canonical_json(value))
    assert canonical_json(value) == canonical_json(value)
