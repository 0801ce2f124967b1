"""
Protection Engine — KV Store Test Suite
=======================================
Tests cover:
  1. Contract shared by both backends
  2. In-memory backend specifics (expiry sweep, unsupported sorted sets)
  3. Remote REST backend specifics (wire protocol, failures)
"""

import json

import httpx
import pytest

from protection_engine.adaptive.memory_store import InMemoryStore
from protection_engine.adaptive.remote_store import RemoteStore
from protection_engine.errors import StoreError, StoreNotImplemented, StoreUnavailable

from conftest import REMOTE_URL


# =============================================================================
# 1. SHARED CONTRACT
# =============================================================================

class TestStoreContract:

    def test_get_missing_key_is_none(self, any_store):
        assert any_store.get("nope") is None

    def test_set_then_get(self, any_store):
        assert any_store.set("k", "v") is True
        assert any_store.get("k") == "v"

    def test_set_overwrites(self, any_store):
        any_store.set("k", "one")
        any_store.set("k", "two")
        assert any_store.get("k") == "two"

    def test_delete_reports_count(self, any_store):
        any_store.set("k", "v")
        assert any_store.delete("k") == 1
        assert any_store.delete("k") == 0
        assert any_store.get("k") is None

    def test_increment_starts_at_one(self, any_store):
        assert any_store.increment("hits") == 1
        assert any_store.increment("hits") == 2
        assert any_store.get("hits") == "2"

    def test_increment_non_integer_raises(self, any_store):
        any_store.set("k", "abc")
        with pytest.raises(StoreError):
            any_store.increment("k")

    def test_ttl_conventions(self, any_store):
        assert any_store.ttl("missing") == -2
        any_store.set("forever", "1")
        assert any_store.ttl("forever") == -1
        any_store.set("short", "1", ttl=30)
        assert any_store.ttl("short") == 30

    def test_value_expires_with_clock(self, any_store, clock):
        any_store.set("k", "v", ttl=10)
        clock.advance(9.5)
        assert any_store.get("k") == "v"
        clock.advance(0.5)
        assert any_store.get("k") is None
        assert any_store.ttl("k") == -2

    def test_expire_existing_and_missing(self, any_store, clock):
        any_store.set("k", "v")
        assert any_store.expire("k", 5) is True
        assert any_store.expire("missing", 5) is False
        clock.advance(5)
        assert any_store.get("k") is None

    def test_set_clears_previous_ttl(self, any_store):
        any_store.set("k", "v", ttl=10)
        any_store.set("k", "v")
        assert any_store.ttl("k") == -1

    def test_hash_increment_and_get_all(self, any_store):
        any_store.hash_increment("h", "total")
        any_store.hash_increment("h", "total")
        any_store.hash_increment("h", "severity_high", 3)
        assert any_store.hash_get_all("h") == {"total": "2", "severity_high": "3"}

    def test_hash_get_all_missing_is_empty(self, any_store):
        assert any_store.hash_get_all("nothing") == {}

    def test_keys_glob(self, any_store):
        any_store.set("protection:blocked:1.1.1.1", "1")
        any_store.set("protection:blocked:2.2.2.2", "1")
        any_store.set("protection:other", "1")
        assert sorted(any_store.keys("protection:blocked:*")) == [
            "protection:blocked:1.1.1.1", "protection:blocked:2.2.2.2",
        ]

    def test_keys_skips_expired(self, any_store, clock):
        any_store.set("a", "1", ttl=1)
        any_store.set("b", "1")
        clock.advance(2)
        assert any_store.keys("*") == ["b"]

    def test_pipeline_returns_one_result_per_command(self, any_store):
        results = (any_store.pipeline()
                   .set("k", "v", ttl=60)
                   .increment("n")
                   .hash_increment("h", "f")
                   .expire("h", 60)
                   .delete("k")
                   .execute())
        assert results == [True, 1, 1, True, 1]

    def test_empty_pipeline(self, any_store):
        assert any_store.pipeline().execute() == []

    def test_ping(self, any_store):
        assert any_store.ping() is True


# =============================================================================
# 2. IN-MEMORY BACKEND
# =============================================================================

class TestInMemoryStore:

    def test_does_not_support_sorted_sets(self, memory_store):
        assert memory_store.supports_sorted_sets is False
        with pytest.raises(StoreNotImplemented):
            memory_store.sorted_set_add("z", 1, "a")
        with pytest.raises(StoreNotImplemented):
            memory_store.sorted_set_range("z", 0, -1)
        with pytest.raises(StoreNotImplemented):
            memory_store.sorted_set_remove_by_score("z", 0, 1)

    def test_not_implemented_is_a_store_error(self, memory_store):
        with pytest.raises(StoreError):
            memory_store.sorted_set_trim_by_rank("z", 0, 1)

    def test_sweep_evicts_expired_entries(self, memory_store, clock):
        memory_store.set("a", "1", ttl=1)
        memory_store.set("b", "1", ttl=100)
        memory_store.set("c", "1")
        clock.advance(5)
        assert memory_store.sweep() == 1
        assert len(memory_store) == 2

    def test_non_positive_ttl_rejected(self, memory_store):
        with pytest.raises(StoreError):
            memory_store.set("k", "v", ttl=0)

    def test_wrong_type_raises(self, memory_store):
        memory_store.hash_increment("h", "f")
        with pytest.raises(StoreError):
            memory_store.get("h")
        memory_store.set("s", "1")
        with pytest.raises(StoreError):
            memory_store.hash_get_all("s")

    def test_background_sweeper_stops_on_close(self):
        store = InMemoryStore(sweep_interval=0.05)
        assert store._sweeper is not None and store._sweeper.is_alive()
        thread = store._sweeper
        store.close()
        assert not thread.is_alive()

    def test_context_manager_closes(self):
        with InMemoryStore(sweep_interval=0.05) as store:
            thread = store._sweeper
            store.set("k", "v")
        assert not thread.is_alive()


# =============================================================================
# 3. REMOTE REST BACKEND
# =============================================================================

class TestRemoteStore:

    def test_requires_url(self):
        with pytest.raises(ValueError):
            RemoteStore(url="", token="t")

    def test_single_command_wire_format(self, remote_store, fake_upstash):
        remote_store.set("k", "v", ttl=60)
        request = fake_upstash.requests[-1]
        assert request.url.host == "fake-store.test"
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer test-token"
        assert json.loads(request.content) == ["SET", "k", "v", "EX", "60"]

    def test_transactional_pipeline_is_one_request(self, remote_store, fake_upstash):
        remote_store.pipeline().set("a", "1").set("b", "2").execute()
        assert len(fake_upstash.requests) == 1
        assert fake_upstash.requests[0].url.path == "/multi-exec"

    def test_plain_pipeline_endpoint(self, remote_store, fake_upstash):
        remote_store.pipeline(transaction=False).set("a", "1").execute()
        assert fake_upstash.requests[0].url.path == "/pipeline"

    def test_sorted_set_ranges(self, remote_store):
        for score, member in [(3, "c"), (1, "a"), (2, "b"), (4, "d")]:
            remote_store.sorted_set_add("z", score, member)
        assert remote_store.sorted_set_range("z", 0, -1) == ["a", "b", "c", "d"]
        assert remote_store.sorted_set_range("z", -2, -1) == ["c", "d"]
        assert remote_store.sorted_set_range_by_score("z", 2, 3) == ["b", "c"]

    def test_sorted_set_add_reports_new_members(self, remote_store):
        assert remote_store.sorted_set_add("z", 1, "a") == 1
        assert remote_store.sorted_set_add("z", 5, "a") == 0
        assert remote_store.sorted_set_range("z", 0, -1) == ["a"]

    def test_trim_by_rank_keeps_newest(self, remote_store):
        for i in range(10):
            remote_store.sorted_set_add("z", i, f"m{i}")
        assert remote_store.sorted_set_trim_by_rank("z", 0, -4) == 7
        assert remote_store.sorted_set_range("z", 0, -1) == ["m7", "m8", "m9"]

    def test_remove_by_score_with_infinite_bound(self, remote_store, fake_upstash):
        for i in range(5):
            remote_store.sorted_set_add("z", i, f"m{i}")
        assert remote_store.sorted_set_remove_by_score("z", float("-inf"), 2) == 3
        assert json.loads(fake_upstash.requests[-1].content) == ["ZREMRANGEBYSCORE", "z", "-inf", "2"]
        assert remote_store.sorted_set_range("z", 0, -1) == ["m3", "m4"]

    def test_timeout_raises_unavailable(self, remote_store, fake_upstash):
        fake_upstash.fail = "timeout"
        with pytest.raises(StoreUnavailable):
            remote_store.get("k")

    def test_connection_error_raises_unavailable(self, remote_store, fake_upstash):
        fake_upstash.fail = "down"
        with pytest.raises(StoreUnavailable):
            remote_store.pipeline().set("a", "1").execute()

    def test_http_error_raises_store_error(self, remote_store, fake_upstash):
        fake_upstash.fail = "http500"
        with pytest.raises(StoreError) as info:
            remote_store.get("k")
        assert not isinstance(info.value, StoreUnavailable)
        assert "HTTP 500" in str(info.value)

    def test_bad_token_rejected(self, fake_upstash):
        client = httpx.Client(transport=httpx.MockTransport(fake_upstash))
        store  = RemoteStore(url=REMOTE_URL, token="wrong", client=client)
        with pytest.raises(StoreError):
            store.get("k")
        client.close()

    def test_command_error_surfaces(self, remote_store):
        remote_store.set("k", "abc")
        with pytest.raises(StoreError):
            remote_store.increment("k")

    def test_ping_false_when_unreachable(self, remote_store, fake_upstash):
        fake_upstash.fail = "down"
        assert remote_store.ping() is False
        assert remote_store.health()["status"] == "unreachable"

    def test_health_ok(self, remote_store):
        assert remote_store.health() == {"status": "ok", "backend": "remote", "url": REMOTE_URL}

    def test_close_leaves_injected_client_open(self, remote_store):
        remote_store.close()
        assert not remote_store.client.is_closed
