"""Unit tests for provider selection and fallback."""

import random

import pytest

from product_gateway.models.config import ManagerConfig
from product_gateway.models.data_models import ErrorKind, Operation
from product_gateway.monitoring.statistics import ProviderStatistics, StatisticsRepository
from product_gateway.pipeline.manager import ProviderManager
from tests.fixtures.providers import StubProvider
from tests.fixtures.sample_data import make_asins


def build_manager(*providers, **config):
    manager = ProviderManager(ManagerConfig(**config), rng=random.Random(7))
    for provider in providers:
        manager.register(provider)
    return manager


def keys(providers):
    return [p.key for p in providers]


class TestSelection:

    def test_priority_policy_prefers_primary(self):
        manager = build_manager(StubProvider("a", priority=1), StubProvider("b", priority=5), primary="b")
        assert manager.select_provider(Operation.PRODUCT).key == "b"

    def test_priority_policy_without_primary_uses_lowest_priority(self):
        manager = build_manager(StubProvider("a", priority=5), StubProvider("b", priority=1))
        assert manager.select_provider(Operation.PRODUCT).key == "b"

    def test_primary_lacking_capability_is_skipped(self):
        manager = build_manager(
            StubProvider("a", priority=5),
            StubProvider("b", priority=1, capabilities={Operation.SEARCH}),
            primary="b",
        )
        assert manager.select_provider(Operation.PRODUCT).key == "a"

    def test_round_robin_cycles(self):
        manager = build_manager(StubProvider("a"), StubProvider("b"), StubProvider("c"), load_balancing="round-robin")
        picks = [manager.select_provider(Operation.PRODUCT).key for _ in range(4)]
        assert picks == ["a", "b", "c", "a"]

    def test_least_used_picks_fewest_requests(self):
        manager = build_manager(StubProvider("a"), StubProvider("b"), load_balancing="least-used")
        manager.statistics.record("a", True)
        manager.statistics.record("a", True)
        manager.statistics.record("b", True)
        assert manager.select_provider(Operation.PRODUCT).key == "b"

    def test_random_policy_uses_injected_rng(self):
        first = build_manager(StubProvider("a"), StubProvider("b"), StubProvider("c"), load_balancing="random")
        second = build_manager(StubProvider("a"), StubProvider("b"), StubProvider("c"), load_balancing="random")
        picks = [first.select_provider(Operation.PRODUCT).key for _ in range(10)]
        assert picks == [second.select_provider(Operation.PRODUCT).key for _ in range(10)]
        assert set(picks) <= {"a", "b", "c"}

    def test_no_capable_provider(self):
        manager = build_manager(StubProvider("a", capabilities={Operation.SEARCH}))
        assert manager.select_provider(Operation.PRODUCT) is None
        assert manager.candidates(Operation.PRODUCT) == []

    def test_candidate_order(self):
        manager = build_manager(
            StubProvider("a"), StubProvider("b"), StubProvider("c"), StubProvider("d"),
            primary="c", fallback="a",
        )
        assert keys(manager.candidates(Operation.PRODUCT)) == ["c", "a", "b", "d"]
        assert keys(manager.candidates(Operation.PRODUCT, preferred="d")) == ["d", "c", "a", "b"]

    def test_register_replaces_same_key(self):
        manager = build_manager(StubProvider("a", priority=1))
        manager.register(StubProvider("a", priority=9))
        assert len(manager.providers) == 1
        assert manager.get_provider("a").priority == 9


class TestFallback:

    @pytest.mark.asyncio
    async def test_falls_back_after_failure(self):
        primary = StubProvider("primary", fail_with=ErrorKind.TRANSIENT)
        backup = StubProvider("backup")
        manager = build_manager(primary, backup, primary="primary", fallback="backup")

        response = await manager.get_product("B000000001")

        assert response["asin"] == "B000000001"
        assert response.get_meta("provider") == "backup"
        assert primary.calls == [("get_product", "B000000001")]
        assert backup.calls == [("get_product", "B000000001")]

    @pytest.mark.asyncio
    async def test_not_found_triggers_fallback(self):
        manager = build_manager(
            StubProvider("a", missing_ids={"B000000001"}),
            StubProvider("b"),
            primary="a",
        )
        response = await manager.get_product("B000000001")
        assert response.get_meta("provider") == "b"

    @pytest.mark.asyncio
    async def test_all_providers_failing_returns_none(self):
        providers = [StubProvider(key, fail_with=ErrorKind.TRANSIENT) for key in ("a", "b", "c")]
        manager = build_manager(*providers, primary="a")

        assert await manager.get_product("B000000001") is None
        for provider in providers:
            assert len(provider.calls) == 1
            assert manager.statistics.get(provider.key).failures == 1

    @pytest.mark.asyncio
    async def test_success_stops_the_chain(self):
        first, second = StubProvider("a"), StubProvider("b")
        manager = build_manager(first, second, primary="a")

        await manager.get_product("B000000001")
        assert second.calls == []

    @pytest.mark.asyncio
    async def test_search_exhaustion_returns_empty_envelope(self):
        manager = build_manager(
            StubProvider("a", fail_with=ErrorKind.QUOTA),
            StubProvider("b", fail_with=ErrorKind.AUTH),
        )
        response = await manager.search_products("lamp")

        assert response.success is True
        assert response.get_products() == []
        assert response.get_meta("last_error") == "auth: b failed"

    @pytest.mark.asyncio
    async def test_search_success_carries_provider_meta(self):
        manager = build_manager(StubProvider("a"))
        response = await manager.search_products("lamp")
        assert len(response.get_products()) == 3
        assert response.get_meta("provider") == "a"
        assert response.get_meta("credits_used") == 1

    @pytest.mark.asyncio
    async def test_hint_is_tried_first(self):
        first, hinted = StubProvider("a"), StubProvider("b")
        manager = build_manager(first, hinted, primary="a")

        response = await manager.get_offers("B000000001", provider="b")
        assert response.get_meta("provider") == "b"
        assert first.calls == []

    @pytest.mark.asyncio
    async def test_only_capable_providers_are_tried(self):
        search_only = StubProvider("a", capabilities={Operation.SEARCH})
        manager = build_manager(search_only, StubProvider("b"), primary="a")

        response = await manager.get_categories()
        assert response.get_meta("provider") == "b"
        assert search_only.calls == []


class TestBulk:

    @pytest.mark.asyncio
    async def test_partial_chunk_failure(self):
        asins = make_asins(60)
        failing = set(asins[50:])
        providers = [StubProvider(key, failing_ids=failing) for key in ("a", "b", "c")]
        manager = build_manager(*providers, primary="a")

        bulk = await manager.get_multiple_products(asins)

        assert len(bulk.products) == 50
        assert sorted(bulk.failed) == sorted(failing)
        assert [len(call[1]) for call in providers[0].calls] == [50, 10]
        assert [len(call[1]) for call in providers[2].calls] == [10]

    @pytest.mark.asyncio
    async def test_chunk_size_follows_selected_provider(self):
        provider = StubProvider("a", max_batch_size=10)
        manager = build_manager(provider)

        bulk = await manager.get_multiple_products(make_asins(25))
        assert len(bulk.products) == 25
        assert [len(call[1]) for call in provider.calls] == [10, 10, 5]

    @pytest.mark.asyncio
    async def test_duplicates_are_removed(self):
        provider = StubProvider("a")
        manager = build_manager(provider)

        bulk = await manager.get_multiple_products(["B1", "B2", "B1"])
        assert list(bulk.products) == ["B1", "B2"]
        assert provider.calls == [("get_multiple_products", ("B1", "B2"))]

    @pytest.mark.asyncio
    async def test_missing_ids_reported_failed(self):
        manager = build_manager(StubProvider("a", missing_ids={"B2"}))
        bulk = await manager.get_multiple_products(["B1", "B2"])
        assert list(bulk.products) == ["B1"]
        assert bulk.failed == ["B2"]

    @pytest.mark.asyncio
    async def test_empty_input(self):
        manager = build_manager(StubProvider("a"))
        bulk = await manager.get_multiple_products([])
        assert bulk.products == {}
        assert bulk.failed == []

    def test_chunk_size_default(self):
        manager = build_manager(default_chunk_size=25)
        assert manager.chunk_size() == 25


class TestDiagnostics:

    @pytest.mark.asyncio
    async def test_connection_for_every_provider(self):
        manager = build_manager(StubProvider("a"), StubProvider("b", fail_with=ErrorKind.AUTH))
        results = await manager.test_connection()
        assert results["a"]["success"] is True
        assert results["b"]["success"] is False

    @pytest.mark.asyncio
    async def test_connection_unknown_provider(self):
        manager = build_manager(StubProvider("a"))
        results = await manager.test_connection("missing")
        assert results == {"missing": {"success": False, "message": "Unknown provider: missing", "latency": 0.0}}

    @pytest.mark.asyncio
    async def test_connection_exception_becomes_failure(self):
        provider = StubProvider("a")

        async def broken():
            raise RuntimeError("socket closed")

        provider.test_connection = broken
        manager = build_manager(provider)

        results = await manager.test_connection("a")
        assert results["a"]["success"] is False
        assert results["a"]["message"] == "socket closed"

    @pytest.mark.asyncio
    async def test_statistics_report(self):
        manager = build_manager(StubProvider("a"), StubProvider("b"))
        await manager.get_product("B1", provider="a")
        manager.statistics.record("a", False)

        report = manager.get_statistics()
        assert report["a"]["total_requests"] == 2
        assert report["a"]["successes"] == 1
        assert report["a"]["success_rate"] == 50.0
        assert report["a"]["avg_response_time"] == 0.05
        assert report["b"]["total_requests"] == 0
        assert report["b"]["success_rate"] == 0.0

    def test_quota_and_marketplaces_aggregate(self):
        manager = build_manager(StubProvider("a"), StubProvider("b"))
        assert set(manager.get_quota_info()) == {"a", "b"}
        assert manager.get_supported_marketplaces() == {"US": "United States"}


class TestStatistics:

    def test_flushes_every_interval(self, store, clock):
        repository = StatisticsRepository(store)
        statistics = ProviderStatistics(repository, flush_interval=3, now=clock.now)

        statistics.record("a", True, 0.2)
        statistics.record("a", False)
        assert store.get(StatisticsRepository.KEY) is None

        statistics.record("a", True, 0.4)
        saved = store.get(StatisticsRepository.KEY)
        assert saved["a"]["total_requests"] == 3
        assert saved["a"]["last_used"] == clock.now()

    def test_load_restores_persisted_counters(self, store):
        repository = StatisticsRepository(store)
        first = ProviderStatistics(repository)
        first.record("a", True, 1.0)
        first.flush()

        second = ProviderStatistics(repository)
        second.load()
        assert second.get("a").successes == 1
        assert second.total_requests("a") == 1

    def test_response_time_only_counts_successes(self):
        statistics = ProviderStatistics()
        statistics.record("a", True, 1.0)
        statistics.record("a", False, 5.0)
        stats = statistics.get("a")
        assert stats.avg_response_time == 1.0
        assert stats.success_rate == 0.5
