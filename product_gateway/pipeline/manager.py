"""Provider selection, fallback and usage statistics."""

import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from product_gateway.models.config import ManagerConfig
from product_gateway.models.data_models import (
    BulkResult,
    ErrorKind,
    LoadBalancing,
    Operation,
    ProviderResult,
    ProviderStats,
)
from product_gateway.models.response import ApiResponse
from product_gateway.monitoring.logger import StructuredLogger
from product_gateway.monitoring.statistics import ProviderStatistics
from product_gateway.providers.base import ProductProvider


ProviderCall = Callable[[ProductProvider], Awaitable[ProviderResult]]


class ProviderManager:
    """
    Routes requests to providers.

    Each call selects a provider under the configured load-balancing policy,
    then walks primary, designated fallback and the remaining capable
    providers (in registration order) until one succeeds. Exhaustion is
    reported structurally: ``None`` for lookups, an empty envelope for
    searches.
    """

    def __init__(
        self,
        config: Optional[ManagerConfig] = None,
        statistics: Optional[ProviderStatistics] = None,
        logger: Optional[StructuredLogger] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the manager.

        Args:
            config: Selection policy, primary/fallback keys and chunk size
            statistics: Usage statistics shared with reporting
            logger: Optional structured logger
            rng: Random source for the ``random`` policy
        """
        self.config = config or ManagerConfig()
        self.statistics = statistics or ProviderStatistics(flush_interval=self.config.stats_flush_interval)
        self.logger = logger
        self._rng = rng or random.Random()
        self._providers: Dict[str, ProductProvider] = {}
        self._round_robin_index = 0

    # -- registration ---------------------------------------------------------

    def register(self, provider: ProductProvider) -> None:
        """Register a provider; re-registering a key replaces it in place."""
        self._providers[provider.key] = provider

    def get_provider(self, key: str) -> Optional[ProductProvider]:
        return self._providers.get(key)

    @property
    def providers(self) -> List[ProductProvider]:
        return list(self._providers.values())

    def capable_providers(self, operation: Operation) -> List[ProductProvider]:
        return [p for p in self._providers.values() if p.supports(operation)]

    # -- selection ------------------------------------------------------------

    def select_provider(self, operation: Operation) -> Optional[ProductProvider]:
        """Choose the first provider to try for ``operation``."""
        capable = self.capable_providers(operation)
        if not capable:
            return None

        mode = LoadBalancing(self.config.load_balancing)
        if mode == LoadBalancing.ROUND_ROBIN:
            provider = capable[self._round_robin_index % len(capable)]
            self._round_robin_index += 1
            return provider
        if mode == LoadBalancing.LEAST_USED:
            return min(capable, key=lambda p: self.statistics.total_requests(p.key))
        if mode == LoadBalancing.RANDOM:
            return self._rng.choice(capable)

        primary = self._providers.get(self.config.primary) if self.config.primary else None
        if primary is not None and primary.supports(operation):
            return primary
        return min(capable, key=lambda p: p.priority)

    def candidates(self, operation: Operation, preferred: Optional[str] = None) -> List[ProductProvider]:
        """Providers in the order they will be attempted."""
        capable = self.capable_providers(operation)
        ordered: List[ProductProvider] = []

        hinted = self._providers.get(preferred) if preferred else None
        if hinted is not None and hinted.supports(operation):
            ordered.append(hinted)

        selected = self.select_provider(operation)
        if selected is not None and selected not in ordered:
            ordered.append(selected)

        fallback = self._providers.get(self.config.fallback) if self.config.fallback else None
        if fallback is not None and fallback.supports(operation) and fallback not in ordered:
            ordered.append(fallback)

        ordered.extend(p for p in capable if p not in ordered)
        return ordered

    # -- execution ------------------------------------------------------------

    async def execute(
        self,
        operation: Operation,
        call: ProviderCall,
        preferred: Optional[str] = None,
    ) -> Tuple[Optional[ProductProvider], Optional[ProviderResult]]:
        """
        Run ``call`` against providers until one succeeds.

        Returns:
            The successful provider and its result, or ``(None, last_result)``
            when every capable provider failed
        """
        tried: List[str] = []
        last_result: Optional[ProviderResult] = None

        for provider in self.candidates(operation, preferred):
            if tried and self.logger:
                self.logger.provider_fallback(tried[-1], provider.key, operation.value)
            tried.append(provider.key)

            result = await call(provider)
            self.statistics.record(provider.key, result.ok, result.execution_time)
            if result.ok:
                return provider, result

            last_result = result
            if result.failure.kind == ErrorKind.AUTH and self.logger:
                self.logger.log(
                    "provider_misconfigured",
                    level=logging.ERROR,
                    provider=provider.key,
                    operation=operation.value,
                    error=result.failure.message,
                )

        if self.logger:
            self.logger.provider_exhausted(operation.value, tried)
        return None, last_result

    @staticmethod
    def _meta(provider: ProductProvider, result: ProviderResult) -> Dict[str, Any]:
        return {
            "provider": provider.key,
            "execution_time": result.execution_time,
            "credits_used": result.credits_used,
            "cache_hit": result.cache_hit,
            "attempts": result.attempts,
        }

    async def _lookup(
        self,
        operation: Operation,
        call: ProviderCall,
        preferred: Optional[str],
    ) -> Optional[ApiResponse]:
        provider, result = await self.execute(operation, call, preferred)
        if provider is None or not result.value:
            return None
        return ApiResponse.product(result.value, self._meta(provider, result))

    async def _listing(
        self,
        operation: Operation,
        call: ProviderCall,
        preferred: Optional[str],
    ) -> ApiResponse:
        provider, result = await self.execute(operation, call, preferred)
        if provider is None:
            meta: Dict[str, Any] = {}
            if result is not None:
                meta["last_error"] = result.failure.describe()
            return ApiResponse.search([], meta)
        return ApiResponse.search(result.value or {}, self._meta(provider, result))

    # -- operations -----------------------------------------------------------

    async def get_product(
        self,
        asin: str,
        options: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ) -> Optional[ApiResponse]:
        """Fetch one product; ``None`` when no provider could return it."""
        return await self._lookup(Operation.PRODUCT, lambda p: p.get_product(asin, options), provider)

    async def search_products(
        self,
        keyword: str,
        options: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ) -> ApiResponse:
        """Search for products; an empty search envelope when every provider failed."""
        return await self._listing(Operation.SEARCH, lambda p: p.search_products(keyword, options), provider)

    def chunk_size(self, provider: Optional[ProductProvider] = None) -> int:
        if provider is not None and getattr(provider, "max_batch_size", None):
            return provider.max_batch_size
        return self.config.default_chunk_size

    async def get_multiple_products(
        self,
        asins: List[str],
        options: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ) -> BulkResult:
        """
        Fetch many products in provider-sized chunks.

        Each chunk goes through the full fallback chain on its own. Records
        from successful chunks are merged by identifier; identifiers from
        chunks no provider could serve, or that a provider did not return,
        are collected once in ``failed``.
        """
        unique = list(dict.fromkeys(asins))
        bulk = BulkResult()
        if not unique:
            return bulk

        hinted = self._providers.get(provider) if provider else None
        size = self.chunk_size(hinted or self.select_provider(Operation.MULTIPLE_PRODUCTS))

        for start in range(0, len(unique), size):
            chunk = unique[start:start + size]
            chosen, result = await self.execute(
                Operation.MULTIPLE_PRODUCTS,
                lambda p, chunk=chunk: p.get_multiple_products(chunk, options),
                provider,
            )
            if chosen is None:
                bulk.add_failed(chunk)
                continue

            chunk_result: BulkResult = result.value
            for asin, product in chunk_result.products.items():
                bulk.products[asin] = product
            bulk.add_failed([asin for asin in chunk if asin not in chunk_result.products])

        bulk.failed = [asin for asin in bulk.failed if asin not in bulk.products]
        return bulk

    async def get_variations(
        self,
        asin: str,
        options: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ) -> Optional[ApiResponse]:
        return await self._lookup(Operation.VARIATIONS, lambda p: p.get_variations(asin, options), provider)

    async def get_offers(
        self,
        asin: str,
        options: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ) -> Optional[ApiResponse]:
        return await self._lookup(Operation.OFFERS, lambda p: p.get_offers(asin, options), provider)

    async def get_reviews_summary(
        self,
        asin: str,
        options: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ) -> Optional[ApiResponse]:
        return await self._lookup(Operation.REVIEWS, lambda p: p.get_reviews_summary(asin, options), provider)

    async def get_bestsellers(
        self,
        category: str = "",
        options: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ) -> ApiResponse:
        return await self._listing(Operation.BESTSELLERS, lambda p: p.get_bestsellers(category, options), provider)

    async def get_new_releases(
        self,
        category: str = "",
        options: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ) -> ApiResponse:
        return await self._listing(Operation.NEW_RELEASES, lambda p: p.get_new_releases(category, options), provider)

    async def get_categories(
        self,
        options: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ) -> Optional[ApiResponse]:
        return await self._lookup(Operation.CATEGORIES, lambda p: p.get_categories(options), provider)

    # -- diagnostics ----------------------------------------------------------

    async def test_connection(self, provider: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        """
        Test one named provider, or all of them.

        Exceptions raised by a provider's test become failed entries.
        """
        if provider is not None:
            if provider not in self._providers:
                return {provider: {"success": False, "message": f"Unknown provider: {provider}", "latency": 0.0}}
            targets = [self._providers[provider]]
        else:
            targets = self.providers

        results: Dict[str, Dict[str, Any]] = {}
        for target in targets:
            try:
                results[target.key] = await target.test_connection()
            except Exception as e:
                if self.logger:
                    self.logger.log("connection_test_error", level=logging.ERROR, provider=target.key, error=str(e))
                results[target.key] = {"success": False, "message": str(e), "latency": 0.0}
        return results

    def get_quota_info(self) -> Dict[str, Dict[str, Any]]:
        return {key: provider.get_quota_info() for key, provider in self._providers.items()}

    def get_supported_marketplaces(self) -> Dict[str, str]:
        marketplaces: Dict[str, str] = {}
        for provider in self._providers.values():
            marketplaces.update(provider.get_supported_marketplaces())
        return marketplaces

    def get_statistics(self) -> Dict[str, Dict[str, Any]]:
        """Per-provider counters with derived average latency and success rate."""
        report: Dict[str, Dict[str, Any]] = {}
        snapshot = self.statistics.snapshot()
        for key in self._providers:
            stats = snapshot.get(key) or ProviderStats()
            entry = stats.to_dict()
            entry["avg_response_time"] = round(stats.avg_response_time, 4)
            entry["success_rate"] = round(stats.success_rate * 100, 2)
            report[key] = entry
        return report

    def clear_cache(self) -> None:
        for provider in self._providers.values():
            provider.clear_cache()
