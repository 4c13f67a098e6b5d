"""
Test support utilities for attribute-spine tests.

Strategy fakes that don't fit as pytest fixtures live in
``tests._support.fakes``.
"""

from __future__ import annotations

from typing import Any


def assert_attributes(actual: dict[str, list[Any]], expected: dict[str, list[Any]]) -> None:
    """
    Assert two AttributeMaps are equal, reporting the first differing attribute.

    Value order within an attribute matters; attribute order does not.
    """
    missing = sorted(set(expected) - set(actual))
    extra = sorted(set(actual) - set(expected))
    assert not missing, f"Missing attributes: {missing}"
    assert not extra, f"Unexpected attributes: {extra}"
    for name, values in expected.items():
        assert actual[name] == values, (
            f"Mismatch at {name}: expected {values!r}, got {actual[name]!r}"
        )
