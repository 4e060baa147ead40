"""Scripted provider doubles for manager and queue tests."""

from typing import Any, Dict, List, Optional, Set

from product_gateway.models.data_models import BulkResult, ErrorKind, Operation, ProviderResult
from tests.fixtures.sample_data import normalized_product


class StubProvider:
    """
    Provider implementing the capability interface with canned behaviour.

    ``fail_with`` makes every data operation fail with that kind;
    ``failing_ids`` makes bulk chunks containing any of those ids fail as a
    whole; ``missing_ids`` are left out of otherwise successful responses.
    """

    def __init__(
        self,
        key: str,
        priority: int = 10,
        capabilities: Optional[Set[Operation]] = None,
        max_batch_size: int = 50,
        fail_with: Optional[ErrorKind] = None,
        failing_ids: Optional[Set[str]] = None,
        missing_ids: Optional[Set[str]] = None,
    ):
        self.key = key
        self.priority = priority
        self.capabilities = set(capabilities) if capabilities is not None else set(Operation)
        self.max_batch_size = max_batch_size
        self.fail_with = fail_with
        self.failing_ids = set(failing_ids or ())
        self.missing_ids = set(missing_ids or ())
        self.calls: List[tuple] = []

    def supports(self, operation: Operation) -> bool:
        return operation in self.capabilities

    def _failure(self) -> ProviderResult:
        return ProviderResult.fail(self.fail_with, f"{self.key} failed", attempts=1)

    async def get_product(self, asin: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        self.calls.append(("get_product", asin))
        if self.fail_with is not None:
            return self._failure()
        if asin in self.missing_ids:
            return ProviderResult.fail(ErrorKind.NOT_FOUND, f"{asin} not found", attempts=1)
        return ProviderResult.success(normalized_product(asin), attempts=1, credits_used=1, execution_time=0.05)

    async def search_products(self, keyword: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        self.calls.append(("search_products", keyword))
        if self.fail_with is not None:
            return self._failure()
        products = [normalized_product(f"B{n:09d}") for n in range(1, 4)]
        return ProviderResult.success(
            {"products": products, "total_results": 3, "current_page": 1, "total_pages": 1},
            attempts=1,
            credits_used=1,
        )

    async def get_multiple_products(self, asins: List[str], options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        self.calls.append(("get_multiple_products", tuple(asins)))
        if self.fail_with is not None or self.failing_ids.intersection(asins):
            return ProviderResult.fail(self.fail_with or ErrorKind.TRANSIENT, "chunk failed", attempts=3)
        bulk = BulkResult()
        for asin in asins:
            if asin not in self.missing_ids:
                bulk.products[asin] = normalized_product(asin)
        bulk.add_failed([asin for asin in asins if asin in self.missing_ids])
        return ProviderResult.success(bulk, attempts=1, credits_used=1)

    async def get_variations(self, asin, options=None) -> ProviderResult:
        return await self._detail("get_variations", {"parent_asin": asin, "variations": [], "dimensions": []})

    async def get_offers(self, asin, options=None) -> ProviderResult:
        return await self._detail("get_offers", {"summary": {"lowest_price": 9.99, "total_offers": 1}, "offers": []})

    async def get_reviews_summary(self, asin, options=None) -> ProviderResult:
        return await self._detail("get_reviews_summary", {"rating": 4.0, "total_reviews": 10, "stars_breakdown": {}})

    async def get_bestsellers(self, category="", options=None) -> ProviderResult:
        return await self.search_products(category, options)

    async def get_new_releases(self, category="", options=None) -> ProviderResult:
        return await self.search_products(category, options)

    async def get_categories(self, options=None) -> ProviderResult:
        return await self._detail("get_categories", {"categories": [{"id": "books", "name": "Books"}]})

    async def _detail(self, name: str, value: Dict[str, Any]) -> ProviderResult:
        self.calls.append((name,))
        if self.fail_with is not None:
            return self._failure()
        return ProviderResult.success(value, attempts=1)

    async def test_connection(self) -> Dict[str, Any]:
        if self.fail_with is not None:
            return {"success": False, "message": f"{self.key} unreachable", "latency": 0.01, "quota": {}}
        return {"success": True, "message": "ok", "latency": 0.01, "quota": {}}

    def get_quota_info(self) -> Dict[str, Any]:
        return {"provider": self.key, "credits_used": 0, "credits_remaining": 100, "credits_limit": 100}

    def get_supported_marketplaces(self) -> Dict[str, str]:
        return {"US": "United States"}

    def set_credentials(self, credentials: Dict[str, str]) -> None:
        pass

    def get_last_error(self) -> Optional[Dict[str, Any]]:
        return None

    def clear_cache(self, cache_key: Optional[str] = None) -> bool:
        return True

    def get_provider_info(self) -> Dict[str, Any]:
        return {"key": self.key}
