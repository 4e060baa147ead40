"""Provider capability interface and the shared provider base."""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from product_gateway.cache.api_cache import ApiCache
from product_gateway.fetcher.retry_handler import RequestExecutor
from product_gateway.models.config import ProviderConfig
from product_gateway.models.data_models import (
    BulkResult,
    ErrorKind,
    Failure,
    Operation,
    ProviderResult,
)
from product_gateway.monitoring.logger import StructuredLogger
from product_gateway.providers.errors import AuthError
from product_gateway.storage.store import KeyValueStore, StoreError


# Provider coroutine method implementing each operation
OPERATION_METHODS: Dict[Operation, str] = {
    Operation.SEARCH: "search_products",
    Operation.PRODUCT: "get_product",
    Operation.MULTIPLE_PRODUCTS: "get_multiple_products",
    Operation.VARIATIONS: "get_variations",
    Operation.OFFERS: "get_offers",
    Operation.REVIEWS: "get_reviews_summary",
    Operation.BESTSELLERS: "get_bestsellers",
    Operation.NEW_RELEASES: "get_new_releases",
    Operation.CATEGORIES: "get_categories",
}


class ProductProvider(Protocol):
    """Capability interface every upstream integration implements.

    Data operations return a ``ProviderResult``; they never raise.
    """

    key: str
    priority: int
    capabilities: Set[Operation]
    max_batch_size: int

    def supports(self, operation: Operation) -> bool: ...

    async def search_products(self, keyword: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult: ...

    async def get_product(self, asin: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult: ...

    async def get_multiple_products(self, asins: List[str], options: Optional[Dict[str, Any]] = None) -> ProviderResult: ...

    async def get_variations(self, asin: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult: ...

    async def get_offers(self, asin: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult: ...

    async def get_reviews_summary(self, asin: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult: ...

    async def get_bestsellers(self, category: str = "", options: Optional[Dict[str, Any]] = None) -> ProviderResult: ...

    async def get_new_releases(self, category: str = "", options: Optional[Dict[str, Any]] = None) -> ProviderResult: ...

    async def get_categories(self, options: Optional[Dict[str, Any]] = None) -> ProviderResult: ...

    async def test_connection(self) -> Dict[str, Any]: ...

    def get_quota_info(self) -> Dict[str, Any]: ...

    def get_supported_marketplaces(self) -> Dict[str, str]: ...

    def set_credentials(self, credentials: Dict[str, str]) -> None: ...

    def get_last_error(self) -> Optional[Dict[str, Any]]: ...

    def clear_cache(self, cache_key: Optional[str] = None) -> bool: ...

    def get_provider_info(self) -> Dict[str, Any]: ...


class ProviderBase:
    """
    Shared behaviour for concrete providers.

    Subclasses implement the ``_fetch_*`` hooks, which perform one upstream
    call and raise ``ProviderError`` subclasses on failure. The public
    operations add caching, rate limiting, retries and request logging
    through the injected ``RequestExecutor`` and convert every outcome into
    a ``ProviderResult``.
    """

    NAME = "Generic provider"
    API_VERSION = "1.0"
    DEFAULT_CAPABILITIES: Set[Operation] = set(Operation)
    MAX_BATCH_SIZE = 50
    REQUIRED_CREDENTIALS: tuple = ()

    def __init__(
        self,
        config: ProviderConfig,
        executor: RequestExecutor,
        cache: Optional[ApiCache] = None,
        store: Optional[KeyValueStore] = None,
        logger: Optional[StructuredLogger] = None,
        now: Callable[[], float] = time.time,
    ):
        self.config = config
        self.key = config.key
        self.priority = config.priority
        self.marketplace = config.marketplace
        self.capabilities: Set[Operation] = (
            {Operation(name) for name in config.capabilities}
            if config.capabilities is not None
            else set(self.DEFAULT_CAPABILITIES)
        )
        self.max_batch_size = config.max_batch_size or self.MAX_BATCH_SIZE
        self.executor = executor
        self.cache = cache
        self.store = store
        self.logger = logger
        self._now = now

        self.credentials: Dict[str, str] = {}
        self.last_error: Optional[Dict[str, Any]] = None
        self.settings: Dict[str, Any] = self._load_settings()

        try:
            self.set_credentials(config.credentials)
        except AuthError as e:
            self._set_last_error(Failure(ErrorKind.AUTH, e.message, e.code))

        for operation, rule in config.rate_limits.items():
            if executor.rate_limiter is not None:
                executor.rate_limiter.configure_scope(f"{self.key}:{operation}", rule.requests, rule.window)

    def supports(self, operation: Operation) -> bool:
        return operation in self.capabilities

    # -- credentials ----------------------------------------------------------

    def validate_credentials(self, credentials: Dict[str, str]) -> None:
        """Raise ``AuthError`` naming the first missing required field."""
        for field in self.REQUIRED_CREDENTIALS:
            if not credentials.get(field):
                raise AuthError(f"Missing required credential: {field}")

    def set_credentials(self, credentials: Dict[str, str]) -> None:
        """Replace the credentials; stored state is untouched if validation fails."""
        self.validate_credentials(credentials)
        self.credentials = dict(credentials)
        self._on_credentials_changed()

    def _on_credentials_changed(self) -> None:
        """Hook for subclasses that derive state (signers, headers) from credentials."""

    def has_credentials(self) -> bool:
        try:
            self.validate_credentials(self.credentials)
        except AuthError:
            return False
        return True

    # -- error tracking -------------------------------------------------------

    def _set_last_error(self, failure: Failure) -> None:
        self.last_error = {
            "kind": failure.kind.value,
            "code": failure.code,
            "message": failure.message,
            "details": failure.details,
            "timestamp": self._now(),
        }

    def get_last_error(self) -> Optional[Dict[str, Any]]:
        return self.last_error

    # -- request plumbing -----------------------------------------------------

    def cache_key(self, cache_type: str, params: Dict[str, Any]) -> str:
        return ApiCache.generate_key(cache_type, {"marketplace": self.marketplace, **params}, self.key)

    async def _request(
        self,
        operation: Operation,
        call: Callable[[], Awaitable[Any]],
        endpoint: Optional[str] = None,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
    ) -> ProviderResult:
        if not self.has_credentials():
            result = ProviderResult.fail(ErrorKind.AUTH, f"{self.key}: credentials are not configured")
        else:
            result = await self.executor.execute(
                self.key,
                operation.value,
                call,
                endpoint=endpoint,
                method=method,
                params=params,
                credits=self.config.credits_per_request,
            )

        if result.ok:
            self.last_error = None
            self._record_credits(result.credits_used)
        else:
            self._set_last_error(result.failure)
            if self.logger:
                self.logger.provider_failure(
                    self.key, operation.value, result.failure.kind.value, result.failure.message
                )
        return result

    async def _cached(
        self,
        operation: Operation,
        cache_type: str,
        params: Dict[str, Any],
        call: Callable[[], Awaitable[Any]],
        endpoint: Optional[str] = None,
        should_cache: Callable[[Any], bool] = bool,
    ) -> ProviderResult:
        """Serve from cache when possible, otherwise fetch and write through."""
        key = self.cache_key(cache_type, params)
        if self.cache is not None:
            cached = await asyncio.to_thread(self.cache.get, key)
            if cached is not None:
                return ProviderResult.success(cached, cache_hit=True)

        result = await self._request(operation, call, endpoint=endpoint, params=params)
        if result.ok and self.cache is not None and should_cache(result.value):
            await asyncio.to_thread(self.cache.set, key, result.value, tags=[f"provider:{self.key}", cache_type])
        return result

    # -- operations -----------------------------------------------------------

    async def search_products(self, keyword: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        options = dict(options or {})
        return await self._cached(
            Operation.SEARCH,
            "search",
            {"keyword": keyword, **options},
            lambda: self._fetch_search(keyword, options),
            endpoint="search",
            should_cache=lambda value: bool(value and value.get("products")),
        )

    async def get_product(self, asin: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        options = dict(options or {})
        return await self._cached(
            Operation.PRODUCT,
            "product",
            {"asin": asin, **options},
            lambda: self._fetch_product(asin, options),
            endpoint="product",
        )

    async def get_multiple_products(self, asins: List[str], options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        """
        Fetch many products, splitting into ``max_batch_size`` requests.

        Cached products are served without a request. Identifiers the
        upstream does not return, or that belong to a failed request, end up
        in ``BulkResult.failed``. The call only fails as a whole when no
        request succeeded and nothing came from cache.
        """
        options = dict(options or {})
        bulk = BulkResult()
        to_fetch: List[str] = []

        for asin in dict.fromkeys(asins):
            cached = None
            if self.cache is not None:
                cached = await asyncio.to_thread(self.cache.get, self.cache_key("product", {"asin": asin}))
            if cached is not None:
                bulk.products[asin] = cached
            else:
                to_fetch.append(asin)

        if not to_fetch:
            return ProviderResult.success(bulk, cache_hit=True)

        last_failure: Optional[ProviderResult] = None
        any_success = False
        attempts = credits = 0
        elapsed = 0.0

        for start in range(0, len(to_fetch), self.max_batch_size):
            chunk = to_fetch[start:start + self.max_batch_size]
            result = await self._request(
                Operation.MULTIPLE_PRODUCTS,
                lambda chunk=chunk: self._fetch_products(chunk, options),
                endpoint="products",
                params={"asins": chunk, **options},
            )
            attempts += result.attempts
            credits += result.credits_used
            elapsed += result.execution_time

            if not result.ok:
                last_failure = result
                bulk.add_failed(chunk)
                continue

            any_success = True
            fetched: Dict[str, Dict[str, Any]] = result.value or {}
            for asin in chunk:
                product = fetched.get(asin)
                if product is None:
                    continue
                bulk.products[asin] = product
                if self.cache is not None:
                    await asyncio.to_thread(
                        self.cache.set,
                        self.cache_key("product", {"asin": asin}),
                        product,
                        tags=[f"provider:{self.key}", "product"],
                    )
            bulk.add_failed([asin for asin in chunk if asin not in fetched])

        if not any_success and not bulk.products and last_failure is not None:
            failure = last_failure.failure
            return ProviderResult(failure=failure, attempts=attempts, execution_time=elapsed)

        return ProviderResult.success(bulk, attempts=attempts, credits_used=credits, execution_time=elapsed)

    async def get_variations(self, asin: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        options = dict(options or {})
        return await self._cached(
            Operation.VARIATIONS,
            "variations",
            {"asin": asin, **options},
            lambda: self._fetch_variations(asin, options),
            endpoint="variations",
            should_cache=lambda value: bool(value and value.get("variations")),
        )

    async def get_offers(self, asin: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        options = dict(options or {})
        return await self._cached(
            Operation.OFFERS,
            "offers",
            {"asin": asin, **options},
            lambda: self._fetch_offers(asin, options),
            endpoint="offers",
        )

    async def get_reviews_summary(self, asin: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        options = dict(options or {})
        return await self._cached(
            Operation.REVIEWS,
            "reviews",
            {"asin": asin, **options},
            lambda: self._fetch_reviews(asin, options),
            endpoint="reviews",
        )

    async def get_bestsellers(self, category: str = "", options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        options = dict(options or {})
        return await self._cached(
            Operation.BESTSELLERS,
            "bestsellers",
            {"category": category, **options},
            lambda: self._fetch_bestsellers(category, options),
            endpoint="bestsellers",
        )

    async def get_new_releases(self, category: str = "", options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        options = dict(options or {})
        return await self._cached(
            Operation.NEW_RELEASES,
            "new_releases",
            {"category": category, **options},
            lambda: self._fetch_new_releases(category, options),
            endpoint="new_releases",
        )

    async def get_categories(self, options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        options = dict(options or {})
        return await self._cached(
            Operation.CATEGORIES,
            "categories",
            dict(options),
            lambda: self._fetch_categories(options),
            endpoint="categories",
        )

    async def test_connection(self) -> Dict[str, Any]:
        """Run a one-item search and report success, latency and quota."""
        started = time.perf_counter()
        result = await self._request(
            Operation.SEARCH,
            lambda: self._fetch_search("test", {"per_page": 1}),
            endpoint="search",
            params={"keyword": "test", "per_page": 1},
        )
        latency = round(time.perf_counter() - started, 3)
        if result.ok:
            return {
                "success": True,
                "message": f"{self.NAME} connection successful",
                "latency": latency,
                "quota": self.get_quota_info(),
            }
        return {
            "success": False,
            "message": f"{self.NAME} connection failed: {result.failure.describe()}",
            "latency": latency,
            "quota": self.get_quota_info(),
        }

    # -- hooks for subclasses -------------------------------------------------

    async def _fetch_search(self, keyword: str, options: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def _fetch_product(self, asin: str, options: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def _fetch_products(self, asins: List[str], options: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError

    async def _fetch_variations(self, asin: str, options: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def _fetch_categories(self, options: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def _fetch_offers(self, asin: str, options: Dict[str, Any]) -> Dict[str, Any]:
        product = await self._fetch_product(asin, {**options, "include_offers": True})
        return {
            "summary": {
                "lowest_price": product.get("price", 0.0),
                "total_offers": product.get("offers_count", 0),
            },
            "offers": product.get("offers", []),
        }

    async def _fetch_reviews(self, asin: str, options: Dict[str, Any]) -> Dict[str, Any]:
        product = await self._fetch_product(asin, {**options, "include_reviews": True})
        return {
            "rating": product.get("rating", 0.0),
            "total_reviews": product.get("reviews_count", 0),
            "stars_breakdown": product.get("stars_breakdown", {}),
        }

    async def _fetch_bestsellers(self, category: str, options: Dict[str, Any]) -> Dict[str, Any]:
        return await self._fetch_search("", {**options, "sort": "Featured", "browse_node": category})

    async def _fetch_new_releases(self, category: str, options: Dict[str, Any]) -> Dict[str, Any]:
        return await self._fetch_search("", {**options, "sort": "NewestArrivals", "browse_node": category})

    # -- quota, settings and info ---------------------------------------------

    def _credits_key(self) -> str:
        day = datetime.fromtimestamp(self._now(), timezone.utc).strftime("%Y%m%d")
        return f"credits:{self.key}:{day}"

    def _record_credits(self, credits: int) -> None:
        if self.store is None or credits <= 0:
            return
        try:
            self.store.incr(self._credits_key(), credits, ttl=2 * 86400)
        except StoreError as e:
            if self.logger:
                self.logger.store_error("provider_credits", str(e))

    def get_quota_info(self) -> Dict[str, Any]:
        used = 0
        if self.store is not None:
            try:
                used = int(self.store.get(self._credits_key()) or 0)
            except StoreError as e:
                if self.logger:
                    self.logger.store_error("provider_credits", str(e))

        today = datetime.fromtimestamp(self._now(), timezone.utc)
        midnight = (today + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)

        rate_limits: Dict[str, Any] = {}
        limiter = self.executor.rate_limiter
        if limiter is not None:
            requests, window = limiter.limits_for(f"{self.key}:{Operation.PRODUCT.value}")
            rate_limits = {"requests": requests, "window": window}

        return {
            "provider": self.key,
            "credits_used": used,
            "credits_remaining": max(0, self.config.daily_limit - used),
            "credits_limit": self.config.daily_limit,
            "reset_time": midnight.timestamp(),
            "rate_limits": rate_limits,
        }

    def get_supported_marketplaces(self) -> Dict[str, str]:
        return {self.marketplace: self.marketplace}

    def _settings_key(self) -> str:
        return f"provider_settings:{self.key}"

    def _load_settings(self) -> Dict[str, Any]:
        if self.store is None:
            return {}
        try:
            return dict(self.store.get(self._settings_key()) or {})
        except StoreError:
            return {}

    def get_settings(self) -> Dict[str, Any]:
        return dict(self.settings)

    def update_settings(self, settings: Dict[str, Any]) -> bool:
        self.settings.update(settings)
        if self.store is None:
            return True
        try:
            return self.store.set(self._settings_key(), self.settings)
        except StoreError as e:
            if self.logger:
                self.logger.store_error("provider_settings", str(e))
            return False

    def clear_cache(self, cache_key: Optional[str] = None) -> bool:
        """Drop one cache key, or every entry this provider wrote."""
        if self.cache is None:
            return False
        if cache_key is not None:
            return self.cache.delete(cache_key)
        self.cache.delete_by_tag(f"provider:{self.key}")
        return True

    def get_provider_info(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.NAME,
            "version": self.API_VERSION,
            "marketplace": self.marketplace,
            "priority": self.priority,
            "capabilities": sorted(op.value for op in self.capabilities),
            "limitations": {
                "max_batch_size": self.max_batch_size,
                "daily_request_limit": self.config.daily_limit,
            },
        }
