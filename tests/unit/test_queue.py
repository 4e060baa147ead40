"""Unit tests for the background job queue."""

import asyncio

import pytest

from product_gateway.cache.api_cache import ApiCache
from product_gateway.models.config import ManagerConfig, QueueConfig
from product_gateway.models.data_models import ErrorKind, JobPriority, JobStatus
from product_gateway.pipeline.manager import ProviderManager
from product_gateway.pipeline.queue import LOCK_KEY, JobQueue, retry_delay
from product_gateway.storage.job_repository import MemoryJobRepository
from tests.fixtures.providers import StubProvider
from tests.fixtures.sample_data import make_asins


@pytest.fixture
def provider():
    return StubProvider("catalogue")


@pytest.fixture
def manager(provider):
    manager = ProviderManager(ManagerConfig(primary="catalogue"))
    manager.register(provider)
    return manager


@pytest.fixture
def make_queue(manager, store, clock):
    def factory(**overrides):
        options = {"memory_usage": lambda: 0.0}
        config = {key: overrides.pop(key) for key in list(overrides) if key in QueueConfig.model_fields}
        options.update(overrides)
        return JobQueue(
            MemoryJobRepository(),
            manager,
            store,
            config=QueueConfig(**config),
            now=clock.now,
            **options,
        )
    return factory


@pytest.fixture
def queue(make_queue):
    return make_queue()


@pytest.mark.parametrize("attempts, expected", [(1, 120), (2, 240), (3, 480), (10, 3600)])
def test_retry_delay(attempts, expected):
    assert retry_delay(attempts) == expected


class TestEnqueue:

    def test_add_stores_pending_job(self, queue, clock):
        job = queue.add("import_product", {"asin": "B1"}, priority=JobPriority.LOW, metadata={"source": "cli"})

        stored = queue.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.priority == 10
        assert stored.max_retries == 3
        assert stored.scheduled_at == clock.now()
        assert stored.metadata == {"source": "cli"}

    def test_unknown_action_rejected(self, queue):
        with pytest.raises(ValueError, match="Unknown job action"):
            queue.add("reindex", {})

    @pytest.mark.parametrize("priority", [-1, 101])
    def test_priority_out_of_range(self, queue, priority):
        with pytest.raises(ValueError, match="priority"):
            queue.add("import_product", {"asin": "B1"}, priority=priority)

    def test_add_bulk_records_batch_info(self, queue):
        batch_id = queue.add_bulk("import_product", [{"asin": a} for a in make_asins(3)])

        assert batch_id.startswith("batch_")
        assert len(queue.get_batch_jobs(batch_id)) == 3
        info = queue.get_batch_info(batch_id)
        assert info["total_jobs"] == 3
        assert info["action"] == "import_product"

    def test_register_handler_adds_action(self, queue):
        async def noop(job):
            return None

        queue.register_handler("noop", noop)
        assert "noop" in queue.actions
        assert queue.add("noop").action == "noop"

    def test_high_priority_without_running_loop_stays_pending(self, queue):
        job = queue.add("import_product", {"asin": "B1"}, priority=JobPriority.HIGH)
        assert queue.get_job(job.id).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_high_priority_triggers_pass(self, queue):
        job = queue.add("import_product", {"asin": "B1"}, priority=JobPriority.HIGH)
        await queue.wait_background()
        assert queue.get_job(job.id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_immediate_processing_can_be_disabled(self, make_queue):
        queue = make_queue(immediate_processing=False)
        job = queue.add("import_product", {"asin": "B1"}, priority=JobPriority.URGENT)
        await queue.wait_background()
        assert queue.get_job(job.id).status == JobStatus.PENDING


class TestProcessing:

    @pytest.mark.asyncio
    async def test_import_product_completes(self, make_queue):
        stored = []

        def sink(action, product, payload):
            stored.append((action, product["asin"]))
            return len(stored)

        queue = make_queue(product_sink=sink)
        job = queue.add("import_product", {"asin": "B1"})

        run = await queue.process_queue()

        assert run.status == "completed"
        assert (run.processed, run.succeeded, run.failed) == (1, 1, 0)
        done = queue.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.attempts == 1
        assert done.result["provider"] == "catalogue"
        assert done.result["stored"] == 1
        assert stored == [("import_product", "B1")]

    @pytest.mark.asyncio
    async def test_async_sink_is_awaited(self, make_queue):
        async def sink(action, product, payload):
            return f"post-{product['asin']}"

        queue = make_queue(product_sink=sink)
        job = queue.add("update_product", {"asin": "B1"})
        await queue.process_queue()
        assert queue.get_job(job.id).result["stored"] == "post-B1"

    @pytest.mark.asyncio
    async def test_each_job_gets_its_own_cache_scope(self, make_queue, store, clock):
        cache = ApiCache(store, now=clock.now)
        queue = make_queue(cache=cache)
        tiers = []

        async def remember(job):
            tiers.append(cache._tier())

        queue.register_handler("remember", remember)
        queue.add("remember")
        queue.add("remember")
        await queue.process_queue()

        assert len(tiers) == 2
        assert tiers[0] is not None and tiers[1] is not None
        assert tiers[0] is not tiers[1]
        assert cache._tier() is None

    @pytest.mark.asyncio
    async def test_limit_caps_jobs_per_pass(self, queue):
        for asin in make_asins(5):
            queue.add("import_product", {"asin": asin})

        run = await queue.process_queue(limit=3)

        assert run.processed == 3
        counts = queue.repository.count_by_status()
        assert counts[JobStatus.COMPLETED] == 3
        assert counts[JobStatus.PENDING] == 2

    @pytest.mark.asyncio
    async def test_higher_priority_runs_first(self, queue):
        low = queue.add("import_product", {"asin": "B1"}, priority=JobPriority.LOW)
        high = queue.add("import_product", {"asin": "B2"}, priority=80)

        await queue.process_queue(limit=1)

        assert queue.get_job(high.id).status == JobStatus.COMPLETED
        assert queue.get_job(low.id).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_future_jobs_wait(self, queue, clock):
        job = queue.add("import_product", {"asin": "B1"}, scheduled_at=clock.now() + 60)

        run = await queue.process_queue()
        assert run.processed == 0

        clock.advance(60)
        await queue.process_queue()
        assert queue.get_job(job.id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_backoff_then_failure(self, queue, provider, clock):
        provider.fail_with = ErrorKind.TRANSIENT
        job = queue.add("import_product", {"asin": "B1"})
        start = clock.now()

        await queue.process_queue()
        first = queue.get_job(job.id)
        assert first.status == JobStatus.PENDING
        assert first.attempts == 1
        assert first.scheduled_at == start + 120
        assert first.error_message == "transient: catalogue failed"

        clock.advance(120)
        await queue.process_queue()
        second = queue.get_job(job.id)
        assert second.attempts == 2
        assert second.scheduled_at == start + 120 + 240

        clock.advance(240)
        run = await queue.process_queue()
        final = queue.get_job(job.id)
        assert final.status == JobStatus.FAILED
        assert final.attempts == 3
        assert run.errors == [{"job_id": job.id, "error": "transient: catalogue failed"}]

    @pytest.mark.asyncio
    async def test_missing_payload_field_fails_attempt(self, queue):
        job = queue.add("import_product", {}, max_retries=1)
        await queue.process_queue()

        failed = queue.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_message == "malformed: payload is missing 'asin'"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_recorded(self, queue):
        async def broken(job):
            raise RuntimeError("boom")

        queue.register_handler("broken", broken)
        job = queue.add("broken", max_retries=1)
        await queue.process_queue()
        assert queue.get_job(job.id).error_message == "unknown: boom"

    @pytest.mark.asyncio
    async def test_job_timeout(self, make_queue):
        queue = make_queue(job_timeout=0.01)

        async def slow(job):
            await asyncio.sleep(1)

        queue.register_handler("slow", slow)
        job = queue.add("slow", max_retries=1)
        await queue.process_queue()
        assert queue.get_job(job.id).error_message.startswith("transient: job timed out")

    @pytest.mark.asyncio
    async def test_bulk_search_enqueues_imports(self, queue):
        job = queue.add("bulk_search", {"keyword": "lamp", "max_results": 2, "import": True})
        await queue.process_queue(limit=1)

        result = queue.get_job(job.id).result
        assert result["asins"] == ["B000000001", "B000000002"]
        assert result["total_results"] == 2
        imports = queue.get_batch_jobs(result["import_batch"])
        assert [j.payload["asin"] for j in imports] == ["B000000001", "B000000002"]

    @pytest.mark.asyncio
    async def test_get_multiple_products_job(self, make_queue, provider):
        provider.missing_ids = {"B000000002"}
        stored = []
        queue = make_queue(product_sink=lambda action, product, payload: stored.append(payload["asin"]))

        job = queue.add("get_multiple_products", {"asins": make_asins(3)})
        await queue.process_queue()

        result = queue.get_job(job.id).result
        assert sorted(result["products"]) == ["B000000001", "B000000003"]
        assert result["failed"] == ["B000000002"]
        assert stored == ["B000000001", "B000000003"]


class TestPassControl:

    @pytest.mark.asyncio
    async def test_pass_is_skipped_while_locked(self, queue, store, clock):
        store.set(LOCK_KEY, {"token": "other", "acquired_at": clock.now()})
        queue.add("import_product", {"asin": "B1"})

        run = await queue.process_queue()
        assert run.status == "locked"
        assert run.processed == 0
        assert queue.is_processing()

    @pytest.mark.asyncio
    async def test_stale_lock_is_taken_over(self, queue, store, clock):
        store.set(LOCK_KEY, {"token": "other", "acquired_at": clock.now() - 301})
        job = queue.add("import_product", {"asin": "B1"})

        run = await queue.process_queue()
        assert run.status == "completed"
        assert queue.get_job(job.id).status == JobStatus.COMPLETED
        assert store.get(LOCK_KEY) is None

    @pytest.mark.asyncio
    async def test_overrunning_pass_keeps_the_new_holders_lock(self, queue, store, clock):
        gates = {"n1": asyncio.Event(), "n2": asyncio.Event()}
        entered = {"n1": asyncio.Event(), "n2": asyncio.Event()}

        async def blocking(job):
            name = job.payload["name"]
            entered[name].set()
            await gates[name].wait()

        queue.register_handler("blocking", blocking)
        queue.add("blocking", {"name": "n1"})
        queue.add("blocking", {"name": "n2"})

        first = asyncio.create_task(queue.process_queue(limit=1))
        await entered["n1"].wait()
        clock.advance(301)
        second = asyncio.create_task(queue.process_queue(limit=1))
        await entered["n2"].wait()

        gates["n1"].set()
        assert (await first).processed == 1
        assert (await queue.process_queue()).status == "locked"
        assert queue.is_processing()

        gates["n2"].set()
        assert (await second).processed == 1
        assert store.get(LOCK_KEY) is None

    @pytest.mark.asyncio
    async def test_lock_released_after_pass(self, queue, store):
        queue.add("import_product", {"asin": "B1"})
        await queue.process_queue()
        assert store.get(LOCK_KEY) is None
        assert not queue.is_processing()

    @pytest.mark.asyncio
    async def test_stop_request(self, queue):
        queue.add("import_product", {"asin": "B1"})
        queue.request_stop()

        run = await queue.process_queue()
        assert run.stopped_early is True
        assert run.processed == 0

        queue.clear_stop()
        run = await queue.process_queue()
        assert run.processed == 1

    @pytest.mark.asyncio
    async def test_time_budget_stops_pass(self, queue, clock):
        async def slow(job):
            clock.advance(250)

        queue.register_handler("slow", slow)
        queue.add("slow")
        queue.add("slow")

        run = await queue.process_queue()
        assert run.processed == 1
        assert run.stopped_early is True

    @pytest.mark.asyncio
    async def test_memory_pressure_stops_pass(self, make_queue):
        queue = make_queue(memory_usage=lambda: 95.0)
        queue.add("import_product", {"asin": "B1"})

        run = await queue.process_queue()
        assert run.stopped_early is True
        assert run.processed == 0

    def test_recover_stale_jobs(self, queue, clock):
        stale = queue.add("import_product", {"asin": "B1"})
        exhausted = queue.add("import_product", {"asin": "B2"})
        fresh = queue.add("import_product", {"asin": "B3"})
        queue.repository.update(stale.id, {"status": JobStatus.PROCESSING, "started_at": clock.now() - 400, "attempts": 1})
        queue.repository.update(exhausted.id, {"status": JobStatus.PROCESSING, "started_at": clock.now() - 400, "attempts": 3})
        queue.repository.update(fresh.id, {"status": JobStatus.PROCESSING, "started_at": clock.now() - 10})

        assert queue.recover_stale_jobs() == 2
        assert queue.get_job(stale.id).status == JobStatus.PENDING
        assert queue.get_job(exhausted.id).status == JobStatus.FAILED
        assert queue.get_job(fresh.id).status == JobStatus.PROCESSING


class TestBatches:

    def test_batch_progress_counts_terminal_jobs(self, queue):
        batch_id = queue.add_bulk("import_product", [{"asin": a} for a in make_asins(10)])
        jobs = queue.get_batch_jobs(batch_id)
        for job in jobs[:6]:
            queue.repository.update(job.id, {"status": JobStatus.COMPLETED})
        for job in jobs[6:9]:
            queue.repository.update(job.id, {"status": JobStatus.FAILED})

        status = queue.get_batch_status(batch_id)
        assert (status.total, status.completed, status.failed, status.pending) == (10, 6, 3, 1)
        assert status.progress == 90.0
        assert status.is_complete is False

    @pytest.mark.asyncio
    async def test_batch_drains_over_two_limited_passes(self, queue):
        batch_id = queue.add_bulk("import_product", [{"asin": a} for a in make_asins(5)])

        await queue.process_queue(limit=3)
        jobs = queue.get_batch_jobs(batch_id)
        assert sum(job.status != JobStatus.PENDING for job in jobs) == 3

        await queue.process_queue(limit=3)
        jobs = queue.get_batch_jobs(batch_id)
        assert all(job.status != JobStatus.PENDING for job in jobs)

        status = queue.get_batch_status(batch_id)
        assert status.total == 5
        assert status.completed == 5
        assert status.is_complete is True

    @pytest.mark.asyncio
    async def test_batch_completes_when_last_job_fails(self, make_queue, provider):
        queue = make_queue(max_retries=1)
        asins = make_asins(2)
        provider.missing_ids = {asins[1]}
        batch_id = queue.add_bulk("import_product", [{"asin": a} for a in asins])

        await queue.process_queue(limit=1)
        assert queue.get_batch_status(batch_id).is_complete is False

        await queue.process_queue(limit=1)
        status = queue.get_batch_status(batch_id)
        assert (status.completed, status.failed) == (1, 1)
        assert status.is_complete is True
        assert queue.get_batch_progress(batch_id)["is_complete"] is True

    @pytest.mark.asyncio
    async def test_progress_snapshot_written_after_pass(self, queue, clock):
        batch_id = queue.add_bulk("import_product", [{"asin": a} for a in make_asins(4)])
        assert queue.get_batch_progress(batch_id)["updated_at"] is None

        await queue.process_queue(limit=2)

        progress = queue.get_batch_progress(batch_id)
        assert progress["completed"] == 2
        assert progress["progress"] == 50.0
        assert progress["updated_at"] == clock.now()

    def test_cancel_job_only_when_pending(self, queue):
        pending = queue.add("import_product", {"asin": "B1"})
        running = queue.add("import_product", {"asin": "B2"})
        queue.repository.update(running.id, {"status": JobStatus.PROCESSING})

        assert queue.cancel_job(pending.id) is True
        assert queue.cancel_job(running.id) is False
        assert queue.get_job(pending.id).status == JobStatus.CANCELLED

    def test_cancel_batch(self, queue):
        batch_id = queue.add_bulk("import_product", [{"asin": a} for a in make_asins(3)])
        other = queue.add("import_product", {"asin": "B9"})

        assert queue.cancel_batch(batch_id) == 3
        assert queue.get_batch_status(batch_id).cancelled == 3
        assert queue.get_job(other.id).status == JobStatus.PENDING

    def test_retry_failed_jobs(self, queue, clock):
        batch_id = queue.add_bulk("import_product", [{"asin": a} for a in make_asins(2)])
        for job in queue.get_batch_jobs(batch_id):
            queue.repository.update(job.id, {"status": JobStatus.FAILED, "attempts": 3, "error_message": "x"})

        assert queue.retry_failed_jobs(batch_id) == 2
        for job in queue.get_batch_jobs(batch_id):
            assert job.status == JobStatus.PENDING
            assert job.attempts == 0
            assert job.error_message is None

    def test_cleanup_old_jobs(self, queue, clock):
        old = queue.add("import_product", {"asin": "B1"})
        queue.repository.update(old.id, {"status": JobStatus.COMPLETED, "completed_at": clock.now()})
        waiting = queue.add("import_product", {"asin": "B2"})

        clock.advance(31 * 86400)
        assert queue.cleanup_old_jobs() == 1
        assert queue.get_job(old.id) is None
        assert queue.get_job(waiting.id) is not None

    @pytest.mark.asyncio
    async def test_statistics(self, queue, provider):
        queue.add("import_product", {"asin": "B1"})
        failing = queue.add("import_product", {"asin": "B2"}, max_retries=1)
        provider.missing_ids = {"B2"}

        await queue.process_queue()

        stats = queue.get_statistics()
        assert stats["total"] == 2
        assert stats["by_status"]["completed"] == 1
        assert stats["by_status"]["failed"] == 1
        assert stats["success_rate"] == 50.0
        assert stats["recent_completions"][0]["action"] == "import_product"
        assert stats["is_processing"] is False
        assert queue.get_job(failing.id).error_message.startswith("not_found")
