"""Tests for attrspine.core.hashing module."""

from attrspine.core.hashing import compute_hash, results_cache_key


class TestComputeHash:
    def test_deterministic(self):
        assert compute_hash("myLDAP", "(&(uid=alice))") == compute_hash("myLDAP", "(&(uid=alice))")

    def test_order_dependent(self):
        assert compute_hash("a", "b") != compute_hash("b", "a")

    def test_length(self):
        assert len(compute_hash("x")) == 32
        assert len(compute_hash("x", length=16)) == 16


class TestResultsCacheKey:
    def test_namespaced_by_connector(self):
        key = results_cache_key("myLDAP", "(&(uid=alice))")
        assert key.startswith("attrspine:myLDAP:")
        assert key != results_cache_key("otherLDAP", "(&(uid=alice))")

    def test_equal_queries_share_a_key(self):
        assert results_cache_key("c", "q") == results_cache_key("c", "q")
        assert results_cache_key("c", "q") != results_cache_key("c", "q2")
