import pytest

from ranksync.utils.cache import MISSING, TTLCache


@pytest.mark.unit
def test_get_set_and_missing_sentinel():
    cache = TTLCache(maxsize=4, ttl=60)
    assert cache.get("a") is MISSING
    assert cache.get("a", None) is None
    cache.set("a", {"items": []})
    assert cache.get("a") == {"items": []}
    assert "a" in cache


@pytest.mark.unit
def test_entries_expire(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr("ranksync.utils.cache.time.time", lambda: now[0])
    cache = TTLCache(maxsize=4, ttl=5)
    cache.set("a", 1)
    now[0] += 4.9
    assert cache.get("a") == 1
    now[0] += 0.2
    assert cache.get("a") is MISSING


@pytest.mark.unit
def test_lru_eviction_keeps_recently_read_keys():
    cache = TTLCache(maxsize=2, ttl=60)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)
    assert "a" in cache
    assert "b" not in cache


@pytest.mark.unit
def test_invalidate_and_clear():
    cache = TTLCache(maxsize=8, ttl=60)
    cache.set((1, "L"), "view")
    cache.set((1, "M"), "view")
    cache.set(("index", 1), "index")

    assert cache.invalidate((1, "L")) is True
    assert cache.invalidate((1, "L")) is False
    assert (1, "M") in cache
    assert ("index", 1) in cache

    cache.clear()
    assert ("index", 1) not in cache


@pytest.mark.unit
@pytest.mark.parametrize("kwargs", [{"maxsize": 0}, {"ttl": 0}])
def test_rejects_non_positive_limits(kwargs):
    with pytest.raises(ValueError):
        TTLCache(**kwargs)
