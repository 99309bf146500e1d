"""Unit tests for per-pair safety margins and the LRU cache."""

import pytest

from trajopt_collision import Cache, CollisionTermError, SafetyMarginData
from trajopt_collision.safety_margin import create_safety_margin_data_vector


# ============================================================
# TestSafetyMarginData
# ============================================================

class TestSafetyMarginData:
    """Tests for margin and coefficient lookup."""

    def test_default_for_unlisted_pair(self):
        data = SafetyMarginData(0.025, 20.0)
        assert data.lookup("a", "b") == (0.025, 20.0)

    def test_pair_lookup_is_symmetric(self):
        data = SafetyMarginData.from_pairs(0.025, 20.0, {("a", "b"): (0.05, 10.0)})
        assert data.lookup("a", "b") == (0.05, 10.0)
        assert data.lookup("b", "a") == (0.05, 10.0)
        assert data.lookup("a", "c") == (0.025, 20.0)

    def test_max_margin_covers_pairs(self):
        data = SafetyMarginData.from_pairs(0.025, 20.0, {("a", "b"): (0.1, 1.0)})
        assert data.max_margin == pytest.approx(0.1)
        assert SafetyMarginData(0.03, 1.0).max_margin == pytest.approx(0.03)

    def test_zero_coeff_pairs_are_ignored(self):
        data = SafetyMarginData.from_pairs(
            0.025, 20.0, {("a", "b"): (0.05, 0.0), ("a", "c"): (0.05, 1.0)},
        )
        assert data.is_contact_allowed("b", "a")
        assert not data.is_contact_allowed("a", "c")
        assert not data.is_contact_allowed("x", "y")

    def test_pair_data_is_read_only(self):
        data = SafetyMarginData.from_pairs(0.025, 20.0, {("a", "b"): (0.05, 10.0)})
        with pytest.raises(TypeError):
            data.pair_data[frozenset(("c", "d"))] = (0.1, 1.0)

    def test_from_dict(self):
        data = SafetyMarginData.from_dict({
            "default_margin": 0.02,
            "default_coeff": 5,
            "pairs": [
                {"pair": ["link", "post"], "margin": 0.1, "coeff": 30},
                {"pair": ["link", "wall"], "coeff": 0},
            ],
        })
        assert data.lookup("post", "link") == (0.1, 30.0)
        assert data.lookup("link", "wall") == (0.02, 0.0)
        assert data.link_names() == {"link", "post", "wall"}

    def test_from_dict_missing_default_raises(self):
        with pytest.raises(CollisionTermError):
            SafetyMarginData.from_dict({"default_margin": 0.02})

    def test_from_dict_bad_pair_raises(self):
        with pytest.raises(CollisionTermError):
            SafetyMarginData.from_dict({
                "default_margin": 0.02,
                "default_coeff": 1.0,
                "pairs": [{"pair": ["only_one"]}],
            })

    def test_vector_entries_are_independent(self):
        vec = create_safety_margin_data_vector(3, 0.025, 20.0)
        assert len(vec) == 3
        assert vec[0] is not vec[1]
        assert all(d.lookup("a", "b") == (0.025, 20.0) for d in vec)


# ============================================================
# TestCache
# ============================================================

class TestCache:
    """Tests for the least-recently-used cache."""

    def test_miss_returns_none(self):
        cache = Cache(2)
        assert cache.get("x") is None

    def test_put_then_get(self):
        cache = Cache(2)
        cache.put("x", 1)
        assert cache.get("x") == 1
        assert "x" in cache
        assert len(cache) == 1

    def test_evicts_least_recently_used(self):
        cache = Cache(2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)
        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache

    def test_never_exceeds_capacity(self):
        cache = Cache(10)
        for i in range(25):
            cache.put(i, i)
        assert len(cache) == 10
        assert 14 not in cache
        assert 15 in cache

    def test_put_existing_key_updates_value(self):
        cache = Cache(2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("a", 3)
        cache.put("c", 4)
        assert cache.get("a") == 3
        assert "b" not in cache

    def test_clear(self):
        cache = Cache(2)
        cache.put("a", 1)
        cache.clear()
        assert len(cache) == 0

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            Cache(0)
