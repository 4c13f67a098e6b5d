"""
Deterministic hashing for cache namespacing.

Cache keys produced by queries can be long (an SQL statement plus its bind
parameters) and contain characters a distributed cache would rather not see.
``compute_hash`` turns any combination of values into a stable, fixed-length
hex key, so two connectors sharing one cache never collide and equal queries
always land on the same entry.

Examples:
    >>> compute_hash("myLDAP", "(&(uid=alice))") == compute_hash("myLDAP", "(&(uid=alice))")
    True
    >>> compute_hash("a", "b") != compute_hash("b", "a")
    True
    >>> len(compute_hash("test", length=16))
    16

Tags:
    hashing, cache, attribute-spine
"""

import hashlib
from typing import Any


def compute_hash(*values: Any, length: int = 32) -> str:
    """
    Compute deterministic hash from values.

    Concatenates the string representations of all values with a '|'
    delimiter and returns the first *length* hex characters of the SHA-256
    digest. Order-dependent: (a, b) and (b, a) hash differently.
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode()).hexdigest()[:length]


def results_cache_key(connector_id: str, cache_key: str) -> str:
    """Namespaced results-cache key for one connector's query."""
    return f"attrspine:{connector_id}:{compute_hash(connector_id, cache_key)}"


__all__ = ["compute_hash", "results_cache_key"]
