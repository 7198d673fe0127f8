"""
Tests for the negotiation → delivery requirement cache
"""
from job_cache import UNKNOWN_JOB_KIND, JobCache


class _Clock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_round_trip():
    cache = JobCache()
    cache.set("j1", "risk_sentinel", {"chain": "base"})
    entry = cache.get("j1")
    assert entry.found
    assert entry.job_kind == "risk_sentinel"
    assert entry.requirement == {"chain": "base"}


def test_overwrite_keeps_latest_negotiation():
    cache = JobCache()
    cache.set("j1", "risk_sentinel", {"a": 1})
    cache.set("j1", "execution_quote", {"b": 2})
    assert len(cache) == 1
    entry = cache.get("j1")
    assert (entry.job_kind, entry.requirement) == ("execution_quote", {"b": 2})


def test_miss_returns_unknown_default():
    entry = JobCache().get("never-negotiated")
    assert not entry.found
    assert entry.job_kind == UNKNOWN_JOB_KIND
    assert entry.requirement == {}


def test_ids_are_compared_as_strings():
    cache = JobCache()
    cache.set(42, "risk_sentinel", {})
    assert "42" in cache
    assert cache.get("42").found


def test_no_eviction_by_default():
    clock = _Clock()
    cache = JobCache(clock=clock)
    cache.set("j1", "risk_sentinel", {})
    clock.now += 10 ** 9
    assert cache.get("j1").found


def test_ttl_evicts_stale_entries_on_read():
    clock = _Clock()
    cache = JobCache(ttl_seconds=60, clock=clock)
    cache.set("j1", "risk_sentinel", {"x": 1})
    clock.now += 59
    assert cache.get("j1").found
    clock.now += 2
    assert not cache.get("j1").found
    assert "j1" not in cache
