"""Caller-facing entry point wiring the gateway components together."""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from product_gateway.cache.api_cache import ApiCache
from product_gateway.fetcher.http_client import AsyncHTTPClient
from product_gateway.fetcher.rate_limiter import RateLimiter
from product_gateway.fetcher.retry_handler import RequestExecutor
from product_gateway.models.config import GatewayConfig
from product_gateway.models.data_models import BatchStatus, BulkResult, JobPriority, QueueJob, QueueRunResult
from product_gateway.models.response import ApiResponse
from product_gateway.monitoring.logger import StructuredLogger
from product_gateway.monitoring.request_log import RequestLog
from product_gateway.monitoring.statistics import ProviderStatistics, StatisticsRepository
from product_gateway.pipeline.manager import ProviderManager
from product_gateway.pipeline.queue import JobQueue, ProductSink
from product_gateway.providers.factory import build_provider
from product_gateway.storage import build_job_repository, build_store
from product_gateway.storage.job_repository import JobRepository
from product_gateway.storage.store import KeyValueStore


class ProductGateway:
    """
    One wired instance graph: store, cache, limiter, providers, manager, queue.

    Build it with ``from_config`` (or pass components directly in tests) and
    close it with ``aclose`` so statistics are flushed and HTTP connections
    released.
    """

    def __init__(
        self,
        config: GatewayConfig,
        store: KeyValueStore,
        cache: ApiCache,
        rate_limiter: RateLimiter,
        executor: RequestExecutor,
        manager: ProviderManager,
        queue: JobQueue,
        http_client: AsyncHTTPClient,
        request_log: RequestLog,
        logger: Optional[StructuredLogger] = None,
    ):
        self.config = config
        self.store = store
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.executor = executor
        self.manager = manager
        self.queue = queue
        self.http_client = http_client
        self.request_log = request_log
        self.logger = logger

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        store: Optional[KeyValueStore] = None,
        repository: Optional[JobRepository] = None,
        http_client: Optional[AsyncHTTPClient] = None,
        logger: Optional[StructuredLogger] = None,
        product_sink: Optional[ProductSink] = None,
        now: Callable[[], float] = time.time,
        sleeper: Callable[[float], Any] = asyncio.sleep,
    ) -> "ProductGateway":
        """
        Build every component from configuration.

        Args:
            config: Gateway configuration
            store: Key/value store; built from ``config.storage`` if omitted
            repository: Job table; built from ``config.storage`` if omitted
            http_client: Shared HTTP client; built from ``config.retry`` timeouts if omitted
            logger: Structured logger; built from ``config.log_level`` if omitted
            product_sink: Callback persisting products imported by queue jobs
            now: Clock for cache, limiter, statistics and queue
            sleeper: Async sleep used for retry backoff

        Returns:
            Wired ProductGateway
        """
        logger = logger or StructuredLogger(level=config.log_level)
        if store is None:
            store = build_store(config.storage)
        if repository is None:
            repository = build_job_repository(config.storage)
        if http_client is None:
            http_client = AsyncHTTPClient(
                timeout=config.retry.request_timeout,
                connect_timeout=config.retry.connect_timeout,
            )

        cache = ApiCache(store, config.cache, now=now, logger=logger)
        rate_limiter = RateLimiter(store, config.rate_limit, now=now, logger=logger)
        request_log = RequestLog(
            enabled=config.enable_request_logging,
            max_entries=config.request_log_size,
            now=now,
        )
        executor = RequestExecutor(
            rate_limiter=rate_limiter,
            config=config.retry,
            request_log=request_log,
            logger=logger,
            sleeper=sleeper,
        )

        statistics = ProviderStatistics(
            StatisticsRepository(store),
            flush_interval=config.manager.stats_flush_interval,
            now=now,
            logger=logger,
        )
        statistics.load()
        manager = ProviderManager(config.manager, statistics, logger=logger)

        for provider_config in config.enabled_providers:
            manager.register(build_provider(
                provider_config,
                executor,
                http_client=http_client,
                cache=cache,
                store=store,
                logger=logger,
                now=now,
            ))

        queue = JobQueue(
            repository,
            manager,
            store,
            config.queue,
            now=now,
            logger=logger,
            product_sink=product_sink,
            cache=cache,
        )
        return cls(config, store, cache, rate_limiter, executor, manager, queue, http_client, request_log, logger)

    async def __aenter__(self) -> "ProductGateway":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Finish background passes, flush statistics and close HTTP connections."""
        await self.queue.wait_background()
        self.manager.statistics.flush()
        self.cache.save_statistics()
        await self.http_client.aclose()

    # -- caller API -----------------------------------------------------------

    # Each lookup runs in its own cache request scope

    async def get_product(self, asin: str, options: Optional[Dict[str, Any]] = None) -> Optional[ApiResponse]:
        with self.cache.request_scope():
            return await self.manager.get_product(asin, options)

    async def search_products(self, keyword: str, options: Optional[Dict[str, Any]] = None) -> ApiResponse:
        with self.cache.request_scope():
            return await self.manager.search_products(keyword, options)

    async def get_multiple_products(self, asins: List[str], options: Optional[Dict[str, Any]] = None) -> BulkResult:
        with self.cache.request_scope():
            return await self.manager.get_multiple_products(asins, options)

    async def test_connection(self, provider: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        return await self.manager.test_connection(provider)

    def get_quota_info(self) -> Dict[str, Dict[str, Any]]:
        return self.manager.get_quota_info()

    def enqueue_job(
        self,
        action: str,
        payload: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> QueueJob:
        """
        Queue a background job.

        ``options`` may carry ``priority``, ``provider``, ``batch_id``,
        ``scheduled_at``, ``max_retries`` and ``metadata``.
        """
        options = dict(options or {})
        return self.queue.add(
            action,
            payload,
            priority=options.get("priority", JobPriority.NORMAL),
            provider_hint=options.get("provider"),
            batch_id=options.get("batch_id"),
            scheduled_at=options.get("scheduled_at"),
            max_retries=options.get("max_retries"),
            metadata=options.get("metadata"),
        )

    def get_batch_status(self, batch_id: str) -> BatchStatus:
        return self.queue.get_batch_status(batch_id)

    async def process_queue(self, limit: Optional[int] = None) -> QueueRunResult:
        return await self.queue.process_queue(limit)
