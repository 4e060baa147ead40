"""Unit tests for the key/value stores."""

from unittest.mock import MagicMock, call

import pytest
from redis.exceptions import RedisError

from product_gateway.storage import build_store
from product_gateway.models.config import StorageConfig
from product_gateway.storage.store import MemoryStore, RedisStore, StoreError


class TestMemoryStore:

    def test_set_and_get_round_trip_json_values(self, store):
        store.set("k", {"a": [1, 2], "b": None})
        assert store.get("k") == {"a": [1, 2], "b": None}

    def test_missing_key_is_none(self, store):
        assert store.get("nope") is None

    def test_values_are_copied(self, store):
        value = {"n": 1}
        store.set("k", value)
        value["n"] = 2
        assert store.get("k") == {"n": 1}

    def test_ttl_expiry(self, store, clock):
        store.set("k", "v", ttl=10)
        clock.advance(9)
        assert store.get("k") == "v"
        assert store.ttl("k") == 1
        clock.advance(1)
        assert store.get("k") is None
        assert store.ttl("k") is None

    def test_no_ttl_never_expires(self, store, clock):
        store.set("k", "v")
        clock.advance(10 ** 9)
        assert store.get("k") == "v"
        assert store.ttl("k") is None

    def test_add_only_when_absent(self, store, clock):
        assert store.add("lock", 1, ttl=5) is True
        assert store.add("lock", 2, ttl=5) is False
        assert store.get("lock") == 1
        clock.advance(5)
        assert store.add("lock", 3, ttl=5) is True
        assert store.get("lock") == 3

    def test_delete_reports_existence(self, store):
        store.set("k", 1)
        assert store.delete("k") is True
        assert store.delete("k") is False

    def test_incr_keeps_original_expiry(self, store, clock):
        assert store.incr("c", ttl=60) == 1
        clock.advance(30)
        assert store.incr("c", ttl=60) == 2
        assert store.ttl("c") == 30
        clock.advance(30)
        assert store.get("c") is None
        assert store.incr("c", 5, ttl=60) == 5

    def test_keys_and_delete_prefix(self, store):
        store.set("cache:a", 1)
        store.set("cache:b", 2)
        store.set("other", 3)
        assert sorted(store.keys("cache:")) == ["cache:a", "cache:b"]
        assert store.delete_prefix("cache:") == 2
        assert store.keys() == ["other"]

    def test_ping(self, store):
        assert store.ping() is True


def test_build_store_defaults_to_memory():
    assert isinstance(build_store(StorageConfig()), MemoryStore)


class TestMemoryStoreAtomicOps:

    def test_compare_and_set_requires_expected_value(self, store):
        store.set("lock", {"token": "a"})
        assert store.compare_and_set("lock", {"token": "b"}, {"token": "c"}) is False
        assert store.get("lock") == {"token": "a"}
        assert store.compare_and_set("lock", {"token": "a"}, {"token": "c"}, ttl=10) is True
        assert store.get("lock") == {"token": "c"}
        assert store.ttl("lock") == 10

    def test_compare_and_set_on_missing_key(self, store):
        assert store.compare_and_set("lock", None, 1) is False
        assert store.get("lock") is None

    def test_compare_and_delete_keeps_other_holder(self, store):
        store.set("lock", {"token": "new"})
        assert store.compare_and_delete("lock", {"token": "old"}) is False
        assert store.get("lock") == {"token": "new"}
        assert store.compare_and_delete("lock", {"token": "new"}) is True
        assert store.get("lock") is None

    def test_set_members(self, store):
        assert store.sadd("tag", ["b", "a"]) == 2
        assert store.sadd("tag", ["a", "c"]) == 1
        assert store.sadd("tag", []) == 0
        assert store.smembers("tag") == ["a", "b", "c"]
        assert store.srem("tag", ["a", "x"]) == 1
        assert store.smembers("tag") == ["b", "c"]

    def test_empty_set_disappears(self, store):
        store.sadd("tag", ["a"])
        store.srem("tag", ["a"])
        assert store.keys("tag") == []
        assert store.smembers("tag") == []
        assert store.srem("tag", ["a"]) == 0

    def test_sadd_extends_but_never_shortens_expiry(self, store, clock):
        store.sadd("tag", ["a"], ttl=100)
        store.sadd("tag", ["b"], ttl=10)
        assert store.ttl("tag") == 100
        clock.advance(50)
        store.sadd("tag", ["c"], ttl=100)
        assert store.ttl("tag") == 100
        clock.advance(100)
        assert store.smembers("tag") == []


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.register_script.side_effect = [MagicMock(name="cas"), MagicMock(name="cad"), MagicMock(name="sadd")]
    return client


class TestRedisStore:

    def test_incr_sets_expiry_in_the_same_transaction(self, redis_client):
        pipe = redis_client.pipeline.return_value
        pipe.execute.return_value = [True, 1]
        store = RedisStore(redis_client, namespace="ns:")

        assert store.incr("c", ttl=60) == 1
        assert pipe.mock_calls == [
            call.set("ns:c", 0, ex=60, nx=True),
            call.incrby("ns:c", 1),
            call.execute(),
        ]

    def test_incr_without_ttl_only_increments(self, redis_client):
        pipe = redis_client.pipeline.return_value
        pipe.execute.return_value = [7]
        store = RedisStore(redis_client)

        assert store.incr("c", 2) == 7
        assert pipe.mock_calls == [call.incrby("c", 2), call.execute()]

    def test_compare_and_delete_runs_script(self, redis_client):
        store = RedisStore(redis_client, namespace="ns:")
        store._compare_and_delete.return_value = 1

        assert store.compare_and_delete("lock", {"token": "a"}) is True
        store._compare_and_delete.assert_called_once_with(keys=["ns:lock"], args=['{"token": "a"}'])

    def test_compare_and_set_passes_ttl(self, redis_client):
        store = RedisStore(redis_client)
        store._compare_and_set.return_value = 0

        assert store.compare_and_set("lock", 1, 2, ttl=300) is False
        store._compare_and_set.assert_called_once_with(keys=["lock"], args=["1", "2", 300])

    def test_sadd_runs_script_with_ttl(self, redis_client):
        store = RedisStore(redis_client)
        store._sadd_extend.return_value = 2

        assert store.sadd("tag", ["b", "a", "b"], ttl=60) == 2
        store._sadd_extend.assert_called_once_with(keys=["tag"], args=[60, "a", "b"])

    def test_errors_become_store_errors(self, redis_client):
        redis_client.pipeline.return_value.execute.side_effect = RedisError("down")
        store = RedisStore(redis_client)
        with pytest.raises(StoreError, match="incr"):
            store.incr("c", ttl=60)
