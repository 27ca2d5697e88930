"""Tests for the cache + durable two-tier store."""
import pytest

from conftest import FailingCache, FakeClock, FlakyDurableStore
from matchguard.core.exceptions import StorageUnavailableError
from matchguard.storage.memory import InMemoryCache, InMemoryLockManager
from matchguard.storage.two_tier import OptionMapTier, TwoTierStore, UserFieldTier


def _remaining(record, now):
    return record["started_at"] + record["duration"] - now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return InMemoryCache(clock=clock)


@pytest.fixture
def durable():
    return FlakyDurableStore()


@pytest.fixture
def store(cache, durable, clock):
    tier = OptionMapTier(durable, "records", InMemoryLockManager())
    return TwoTierStore(cache, tier, "rec_", _remaining, clock)


def _record(clock, duration=1000):
    return {"started_at": clock(), "duration": duration}


class TestTwoTierStore:
    def test_write_hits_both_tiers(self, store, cache, durable, clock):
        record = _record(clock)
        store.write("a", record, 1000)
        assert cache.get("rec_a") == record
        assert durable.get_option("records") == {"a": record}

    def test_read_repairs_cache_with_remaining_ttl(self, store, cache, clock):
        store.write("a", _record(clock), 1000)
        clock.advance(400)
        cache.delete("rec_a")

        assert store.read("a") is not None
        assert cache.ttl("rec_a") == 600

    def test_expired_record_is_purged(self, store, cache, durable, clock):
        store.write("a", _record(clock, duration=100), 100)
        clock.advance(101)

        assert store.read("a") is None
        assert durable.get_option("records") == {}

    def test_expired_record_kept_when_not_purging(self, cache, durable, clock):
        tier = UserFieldTier(durable, "_state")
        store = TwoTierStore(cache, tier, "state_", _remaining, clock, purge_expired=False)
        record = _record(clock, duration=100)
        store.write("u1", record, 100)
        clock.advance(200)

        assert store.read("u1") == record
        assert durable.get_user_field("u1", "_state") == record

    def test_cache_failure_falls_back_to_durable(self, durable, clock):
        tier = OptionMapTier(durable, "records", InMemoryLockManager())
        store = TwoTierStore(FailingCache(), tier, "rec_", _remaining, clock)
        record = _record(clock)
        store.write("a", record, 1000)
        assert store.read("a") == record

    def test_durable_failure_propagates(self, store, cache, durable, clock):
        store.write("a", _record(clock), 1000)
        cache.delete("rec_a")
        durable.fail = True
        with pytest.raises(StorageUnavailableError):
            store.read("a")

    def test_cache_hit_skips_durable(self, store, durable, clock):
        record = _record(clock)
        store.write("a", record, 1000)
        durable.fail = True
        assert store.read("a") == record

    def test_remove(self, store, cache, durable, clock):
        store.write("a", _record(clock), 1000)
        store.remove("a")
        assert cache.get("rec_a") is None
        assert store.read("a") is None
