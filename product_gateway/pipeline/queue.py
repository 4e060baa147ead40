"""Background job queue processed in passes by an external scheduler."""

import asyncio
import contextlib
import inspect
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import psutil

from product_gateway.cache.api_cache import ApiCache
from product_gateway.models.config import QueueConfig
from product_gateway.models.data_models import (
    BatchStatus,
    ErrorKind,
    Failure,
    JobPriority,
    JobStatus,
    Operation,
    QueueJob,
    QueueRunResult,
)
from product_gateway.monitoring.logger import StructuredLogger
from product_gateway.pipeline.manager import ProviderManager
from product_gateway.storage.job_repository import JobRepository
from product_gateway.storage.store import KeyValueStore, StoreError


JobHandler = Callable[[QueueJob], Awaitable[Any]]

# Receives (action, product, job payload) and returns an identifier for the stored record
ProductSink = Callable[[str, Dict[str, Any], Dict[str, Any]], Any]

LOCK_KEY = "queue_processing"
STOP_KEY = "queue_stop"
BATCH_INFO_PREFIX = "batch_info:"
BATCH_PROGRESS_PREFIX = "batch_progress:"


class JobError(Exception):
    """Job failure carrying its classified kind."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    @classmethod
    def from_failure(cls, failure: Optional[Failure], default: str) -> "JobError":
        if failure is None:
            return cls(ErrorKind.UNKNOWN, default)
        return cls(failure.kind, failure.message)

    def describe(self) -> str:
        return f"{self.kind.value}: {self.message}"


def retry_delay(attempts: int, base: int = 60, cap: int = 3600) -> float:
    """Delay before the next attempt: ``min(2**attempts * base, cap)`` seconds."""
    return min((2 ** attempts) * base, cap)


def _memory_percent() -> float:
    return psutil.virtual_memory().percent


class JobQueue:
    """
    Durable job queue with priorities, batches and retry backoff.

    Jobs are claimed and executed by ``process_queue``, which is guarded by a
    single-flight flag in the shared store so overlapping scheduler ticks
    (possibly from different processes) never run two passes at once.
    """

    def __init__(
        self,
        repository: JobRepository,
        manager: ProviderManager,
        store: KeyValueStore,
        config: Optional[QueueConfig] = None,
        now: Callable[[], float] = time.time,
        logger: Optional[StructuredLogger] = None,
        product_sink: Optional[ProductSink] = None,
        memory_usage: Callable[[], float] = _memory_percent,
        cache: Optional[ApiCache] = None,
    ):
        """
        Initialize the queue.

        Args:
            repository: Job table
            manager: Provider manager executing job actions
            store: Shared store holding the processing flag and batch records
            config: Queue configuration
            now: Clock returning epoch seconds
            logger: Optional structured logger
            product_sink: Optional callback persisting imported products
            memory_usage: Returns system memory usage in percent
            cache: Response cache; each job runs in its own request scope
        """
        self.repository = repository
        self.manager = manager
        self.store = store
        self.config = config or QueueConfig()
        self._now = now
        self.logger = logger
        self.product_sink = product_sink
        self._memory_usage = memory_usage
        self.cache = cache
        self._background: Set[asyncio.Task] = set()

        self._handlers: Dict[str, JobHandler] = {
            "import_product": self._import_product,
            "update_product": self._update_product,
            "bulk_search": self._bulk_search,
            "get_multiple_products": self._get_multiple_products,
        }

    # -- handlers -------------------------------------------------------------

    def register_handler(self, action: str, handler: JobHandler) -> None:
        """Register a coroutine executed for jobs with ``action``."""
        self._handlers[action] = handler

    @property
    def actions(self) -> List[str]:
        return sorted(self._handlers)

    async def _store_product(self, action: str, product: Dict[str, Any], payload: Dict[str, Any]) -> Any:
        if self.product_sink is None:
            return None
        stored = self.product_sink(action, product, payload)
        if inspect.isawaitable(stored):
            stored = await stored
        return stored

    async def _fetch_product(self, job: QueueJob) -> Dict[str, Any]:
        asin = job.payload.get("asin")
        if not asin:
            raise JobError(ErrorKind.MALFORMED, "payload is missing 'asin'")
        options = job.payload.get("options") or {}

        provider, result = await self.manager.execute(
            Operation.PRODUCT,
            lambda p: p.get_product(asin, options),
            job.provider_hint,
        )
        if provider is None:
            raise JobError.from_failure(result.failure if result else None, f"no provider can fetch {asin}")
        if not result.value:
            raise JobError(ErrorKind.NOT_FOUND, f"{asin} not found")
        return {"asin": asin, "provider": provider.key, "product": result.value}

    async def _import_product(self, job: QueueJob) -> Dict[str, Any]:
        fetched = await self._fetch_product(job)
        fetched["stored"] = await self._store_product("import_product", fetched["product"], job.payload)
        return fetched

    async def _update_product(self, job: QueueJob) -> Dict[str, Any]:
        fetched = await self._fetch_product(job)
        fetched["stored"] = await self._store_product("update_product", fetched["product"], job.payload)
        return fetched

    async def _bulk_search(self, job: QueueJob) -> Dict[str, Any]:
        keyword = job.payload.get("keyword", "")
        options = job.payload.get("options") or {}

        provider, result = await self.manager.execute(
            Operation.SEARCH,
            lambda p: p.search_products(keyword, options),
            job.provider_hint,
        )
        if provider is None:
            raise JobError.from_failure(result.failure if result else None, "no provider can search")

        products = list((result.value or {}).get("products") or [])
        max_results = job.payload.get("max_results")
        if max_results:
            products = products[:int(max_results)]
        asins = [p["asin"] for p in products if p.get("asin")]

        outcome: Dict[str, Any] = {
            "keyword": keyword,
            "provider": provider.key,
            "total_results": len(asins),
            "asins": asins,
        }
        if job.payload.get("import") and asins:
            outcome["import_batch"] = self.add_bulk(
                "import_product",
                [{"asin": asin} for asin in asins],
                priority=job.priority,
                provider_hint=job.provider_hint,
            )
        return outcome

    async def _get_multiple_products(self, job: QueueJob) -> Dict[str, Any]:
        asins = list(job.payload.get("asins") or [])
        if not asins:
            raise JobError(ErrorKind.MALFORMED, "payload is missing 'asins'")

        bulk = await self.manager.get_multiple_products(asins, job.payload.get("options"), job.provider_hint)
        if not bulk.products:
            raise JobError(ErrorKind.NOT_FOUND, f"none of {len(asins)} products could be fetched")

        stored = {}
        for asin, product in bulk.products.items():
            stored[asin] = await self._store_product("import_product", product, {**job.payload, "asin": asin})
        return {"products": bulk.products, "failed": bulk.failed, "stored": stored}

    # -- enqueue --------------------------------------------------------------

    def add(
        self,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = JobPriority.NORMAL,
        provider_hint: Optional[str] = None,
        batch_id: Optional[str] = None,
        scheduled_at: Optional[float] = None,
        max_retries: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> QueueJob:
        """
        Insert a pending job.

        Jobs at HIGH priority or above trigger an out-of-band processing
        pass when an event loop is running.

        Raises:
            ValueError: If no handler is registered for ``action`` or the
                priority is outside 0-100
        """
        if action not in self._handlers:
            raise ValueError(f"Unknown job action: {action}")
        if not 0 <= int(priority) <= 100:
            raise ValueError("priority must be between 0 and 100")

        now = self._now()
        job = self.repository.insert(QueueJob(
            action=action,
            payload=dict(payload or {}),
            provider_hint=provider_hint,
            batch_id=batch_id,
            priority=int(priority),
            max_retries=max_retries if max_retries is not None else self.config.max_retries,
            scheduled_at=scheduled_at if scheduled_at is not None else now,
            created_at=now,
            metadata=dict(metadata or {}),
        ))
        if self.logger:
            self.logger.log("job_queued", job_id=job.id, action=action, priority=job.priority, batch_id=batch_id)

        if priority >= JobPriority.HIGH and self.config.immediate_processing:
            self._trigger_processing()
        return job

    def _trigger_processing(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.process_queue(limit=1))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self) -> None:
        """Wait for passes started by high-priority enqueues."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def add_bulk(
        self,
        action: str,
        payloads: List[Dict[str, Any]],
        batch_id: Optional[str] = None,
        priority: int = JobPriority.NORMAL,
        provider_hint: Optional[str] = None,
    ) -> str:
        """Enqueue one job per payload under a shared batch id and return the id."""
        batch_id = batch_id or f"batch_{uuid.uuid4().hex[:16]}"
        for payload in payloads:
            self.add(action, payload, priority=priority, provider_hint=provider_hint, batch_id=batch_id)

        info = {
            "batch_id": batch_id,
            "action": action,
            "total_jobs": len(payloads),
            "created_at": self._now(),
        }
        try:
            self.store.set(BATCH_INFO_PREFIX + batch_id, info, ttl=self.config.retention_days * 86400)
        except StoreError as e:
            if self.logger:
                self.logger.store_error("queue_batch_info", str(e))
        return batch_id

    # -- processing -----------------------------------------------------------

    def _acquire_lock(self) -> Optional[Dict[str, Any]]:
        """Take the processing flag; returns the holder record, or None if another pass owns it."""
        now = self._now()
        holder = {"token": uuid.uuid4().hex, "acquired_at": now}
        if self.store.add(LOCK_KEY, holder, ttl=self.config.lock_timeout):
            return holder
        current = self.store.get(LOCK_KEY)
        if current is None:
            return holder if self.store.add(LOCK_KEY, holder, ttl=self.config.lock_timeout) else None
        if not self._lock_is_stale(current, now):
            return None
        if self.logger:
            self.logger.log("queue_lock_stale", level=logging.WARNING, holder=current)
        if self.store.compare_and_set(LOCK_KEY, current, holder, ttl=self.config.lock_timeout):
            return holder
        return None

    def _release_lock(self, holder: Dict[str, Any]) -> None:
        if not self.store.compare_and_delete(LOCK_KEY, holder) and self.logger:
            self.logger.log("queue_lock_lost", level=logging.WARNING, acquired_at=holder["acquired_at"])

    def _lock_is_stale(self, holder: Any, now: float) -> bool:
        acquired_at = holder.get("acquired_at") if isinstance(holder, dict) else None
        return acquired_at is None or now - float(acquired_at) > self.config.lock_timeout

    def is_processing(self) -> bool:
        holder = self.store.get(LOCK_KEY)
        return holder is not None and not self._lock_is_stale(holder, self._now())

    def request_stop(self) -> None:
        """Ask running passes to stop before their next job."""
        self.store.set(STOP_KEY, self._now())

    def clear_stop(self) -> None:
        self.store.delete(STOP_KEY)

    def _stop_reason(self, started: float) -> Optional[str]:
        if self.store.get(STOP_KEY) is not None:
            return "stop_requested"
        if self._now() - started >= self.config.pass_time_budget:
            return "time_budget"
        if self._memory_usage() >= self.config.memory_limit_percent:
            return "memory"
        return None

    async def process_queue(self, limit: Optional[int] = None) -> QueueRunResult:
        """
        Run one processing pass over due jobs.

        Store and repository calls run in worker threads so a slow backend
        never blocks the event loop.

        Args:
            limit: Maximum jobs to pick up; defaults to ``batch_size``

        Returns:
            QueueRunResult; ``status`` is ``"locked"`` when another pass holds
            the processing flag
        """
        try:
            holder = await asyncio.to_thread(self._acquire_lock)
        except StoreError as e:
            if self.logger:
                self.logger.store_error("queue_lock", str(e))
            return QueueRunResult(status="error", errors=[{"error": str(e)}])
        if holder is None:
            return QueueRunResult(status="locked")

        run = QueueRunResult()
        started = self._now()
        touched_batches: Set[str] = set()
        try:
            jobs = await asyncio.to_thread(self.repository.fetch_due, limit or self.config.batch_size, started)
            for job in jobs:
                reason = await asyncio.to_thread(self._stop_reason, started)
                if reason:
                    run.stopped_early = True
                    if self.logger:
                        self.logger.log("queue_pass_stopped", reason=reason, remaining=len(jobs) - run.processed)
                    break
                if await self._process_job(job, run) and job.batch_id:
                    touched_batches.add(job.batch_id)
        finally:
            await asyncio.to_thread(self._release_lock, holder)

        for batch_id in touched_batches:
            await asyncio.to_thread(self._save_progress, batch_id)
        if self.logger:
            self.logger.queue_pass(run.processed, run.succeeded, run.failed, run.stopped_early)
        return run

    async def _run_handler(self, job: QueueJob) -> Any:
        handler = self._handlers.get(job.action)
        if handler is None:
            raise JobError(ErrorKind.UNKNOWN, f"no handler for action '{job.action}'")
        scope = self.cache.request_scope() if self.cache is not None else contextlib.nullcontext()
        with scope:
            try:
                return await asyncio.wait_for(handler(job), timeout=self.config.job_timeout)
            except asyncio.TimeoutError as e:
                raise JobError(ErrorKind.TRANSIENT, f"job timed out after {self.config.job_timeout}s") from e

    async def _process_job(self, job: QueueJob, run: QueueRunResult) -> bool:
        """Claim and execute one job; returns False if another worker claimed it first."""
        started = self._now()
        attempts = job.attempts + 1
        claimed = await asyncio.to_thread(
            self.repository.update_where,
            {"status": JobStatus.PROCESSING, "started_at": started, "attempts": attempts},
            job_id=job.id,
            status=JobStatus.PENDING,
        )
        if not claimed:
            return False

        job.attempts = attempts
        job.started_at = started
        run.processed += 1

        try:
            result = await self._run_handler(job)
        except JobError as e:
            await asyncio.to_thread(self._fail_attempt, job, e.describe(), run)
        except Exception as e:
            if self.logger:
                self.logger.log("job_error", level=logging.ERROR, job_id=job.id, error=repr(e))
            await asyncio.to_thread(self._fail_attempt, job, f"{ErrorKind.UNKNOWN.value}: {e}", run)
        else:
            finished = self._now()
            await asyncio.to_thread(self.repository.update, job.id, {
                "status": JobStatus.COMPLETED,
                "completed_at": finished,
                "result": result,
                "error_message": None,
            })
            run.succeeded += 1
            if self.logger:
                self.logger.job_completed(job.id, job.action, (finished - started) * 1000)
        return True

    def _fail_attempt(self, job: QueueJob, error: str, run: QueueRunResult) -> None:
        run.failed += 1
        run.errors.append({"job_id": job.id, "error": error})

        if job.attempts < job.max_retries:
            scheduled_at = self._now() + retry_delay(job.attempts, self.config.backoff_base, self.config.backoff_cap)
            self.repository.update(job.id, {
                "status": JobStatus.PENDING,
                "scheduled_at": scheduled_at,
                "error_message": error,
            })
            if self.logger:
                self.logger.job_retry(job.id, job.attempts, scheduled_at, error)
            return

        self.repository.update(job.id, {
            "status": JobStatus.FAILED,
            "completed_at": self._now(),
            "error_message": error,
        })
        if self.logger:
            self.logger.job_failed(job.id, job.attempts, error)

    def recover_stale_jobs(self) -> int:
        """
        Return jobs stuck in ``processing`` past the lock timeout to the queue.

        A job whose attempts are used up is failed instead.
        """
        now = self._now()
        recovered = 0
        for job in self.repository.stale_processing(now - self.config.lock_timeout):
            error = f"{ErrorKind.TRANSIENT.value}: processing did not finish"
            if job.attempts < job.max_retries:
                values = {"status": JobStatus.PENDING, "scheduled_at": now, "error_message": error}
            else:
                values = {"status": JobStatus.FAILED, "completed_at": now, "error_message": error}
            recovered += self.repository.update_where(values, job_id=job.id, status=JobStatus.PROCESSING)
        if recovered and self.logger:
            self.logger.log("queue_recovered_stale", count=recovered)
        return recovered

    # -- status ---------------------------------------------------------------

    def get_job(self, job_id: int) -> Optional[QueueJob]:
        return self.repository.get(job_id)

    def get_batch_jobs(self, batch_id: str) -> List[QueueJob]:
        return self.repository.by_batch(batch_id)

    def get_batch_status(self, batch_id: str) -> BatchStatus:
        counts = self.repository.count_by_status(batch_id)
        return BatchStatus(
            batch_id=batch_id,
            total=sum(counts.values()),
            pending=counts[JobStatus.PENDING],
            processing=counts[JobStatus.PROCESSING],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            cancelled=counts[JobStatus.CANCELLED],
        )

    def get_batch_info(self, batch_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(BATCH_INFO_PREFIX + batch_id)

    def _save_progress(self, batch_id: str) -> None:
        progress = self.get_batch_status(batch_id).to_dict()
        progress["updated_at"] = self._now()
        try:
            self.store.set(BATCH_PROGRESS_PREFIX + batch_id, progress, ttl=self.config.retention_days * 86400)
        except StoreError as e:
            if self.logger:
                self.logger.store_error("queue_batch_progress", str(e))

    def get_batch_progress(self, batch_id: str) -> Dict[str, Any]:
        """Snapshot written after the last pass that touched the batch, or live counts."""
        progress = self.store.get(BATCH_PROGRESS_PREFIX + batch_id)
        if progress is None:
            progress = self.get_batch_status(batch_id).to_dict()
            progress["updated_at"] = None
        return progress

    def get_statistics(self) -> Dict[str, Any]:
        """Totals per status, average processing time, success rate and recent completions."""
        jobs = self.repository.all()
        counts = {status.value: 0 for status in JobStatus}
        durations = []
        for job in jobs:
            counts[job.status.value] += 1
            if job.status == JobStatus.COMPLETED and job.started_at is not None and job.completed_at is not None:
                durations.append(job.completed_at - job.started_at)

        finished = counts[JobStatus.COMPLETED.value] + counts[JobStatus.FAILED.value]
        recent = sorted(
            (job for job in jobs if job.status == JobStatus.COMPLETED),
            key=lambda job: job.completed_at or 0,
            reverse=True,
        )[:10]

        return {
            "total": len(jobs),
            "by_status": counts,
            "avg_processing_time": round(sum(durations) / len(durations), 3) if durations else 0.0,
            "success_rate": round(counts[JobStatus.COMPLETED.value] / finished * 100, 2) if finished else 0.0,
            "recent_completions": [
                {"id": job.id, "action": job.action, "completed_at": job.completed_at} for job in recent
            ],
            "is_processing": self.is_processing(),
        }

    # -- controls -------------------------------------------------------------

    def cancel_job(self, job_id: int) -> bool:
        """Cancel a job that is still pending."""
        return self.repository.update_where(
            {"status": JobStatus.CANCELLED, "completed_at": self._now()},
            job_id=job_id,
            status=JobStatus.PENDING,
        ) > 0

    def cancel_batch(self, batch_id: str) -> int:
        return self.repository.update_where(
            {"status": JobStatus.CANCELLED, "completed_at": self._now()},
            status=JobStatus.PENDING,
            batch_id=batch_id,
        )

    def retry_failed_jobs(self, batch_id: Optional[str] = None) -> int:
        """Reset failed jobs (optionally of one batch) to pending with zero attempts."""
        return self.repository.update_where(
            {
                "status": JobStatus.PENDING,
                "attempts": 0,
                "scheduled_at": self._now(),
                "completed_at": None,
                "error_message": None,
            },
            status=JobStatus.FAILED,
            batch_id=batch_id,
        )

    def cleanup_old_jobs(self, days: Optional[int] = None) -> int:
        """Delete terminal jobs older than ``days`` (default ``retention_days``)."""
        days = self.config.retention_days if days is None else days
        deleted = self.repository.delete_terminal_before(self._now() - days * 86400)
        if deleted and self.logger:
            self.logger.log("queue_cleanup", deleted=deleted, days=days)
        return deleted
