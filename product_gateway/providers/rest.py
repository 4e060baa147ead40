"""Generic REST provider for JSON catalogue APIs."""

import time
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import httpx

from product_gateway.fetcher.http_client import AsyncHTTPClient
from product_gateway.processor.normalizer import normalize_batch, normalize_product
from product_gateway.providers.base import ProviderBase
from product_gateway.providers.errors import (
    AuthError,
    MalformedResponseError,
    NotFoundError,
    QuotaExceededError,
    TransientError,
    UpstreamError,
)


def _retry_after(response: httpx.Response) -> Optional[float]:
    """Convert a ``Retry-After`` header (seconds or HTTP date) to epoch seconds."""
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return time.time() + float(value)
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(value).timestamp()
    except (TypeError, ValueError):
        return None


class RestProvider(ProviderBase):
    """
    Provider for catalogue services exposing a plain JSON API.

    Endpoints (relative to ``base_url``)::

        GET /products/{asin}              single product
        GET /products?asins=a,b,c         up to 50 products
        GET /search?keyword=...           search results
        GET /products/{asin}/variations
        GET /products/{asin}/offers
        GET /products/{asin}/reviews
        GET /bestsellers?category=...
        GET /new-releases?category=...
        GET /categories

    Authenticates with an ``X-API-Key`` header.
    """

    NAME = "REST catalogue API"
    MAX_BATCH_SIZE = 50
    REQUIRED_CREDENTIALS = ("api_key",)

    def __init__(self, config, executor, http_client: Optional[AsyncHTTPClient] = None, **kwargs):
        if not config.base_url:
            raise ValueError(f"provider '{config.key}' needs a base_url")
        self.base_url = config.base_url.rstrip("/")
        self.http_client = http_client or AsyncHTTPClient()
        super().__init__(config, executor, **kwargs)

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "X-API-Key": self.credentials.get("api_key", ""),
        }

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET ``path`` and classify the outcome into provider errors."""
        query = {
            name: value for name, value in {"marketplace": self.marketplace, **(params or {})}.items()
            if value is not None and value != ""
        }
        response = await self.http_client.get(f"{self.base_url}{path}", params=query, headers=self._headers())

        status = response.status_code
        if status in (401, 403):
            raise AuthError(f"{self.key} rejected credentials", code=status)
        if status == 404:
            raise NotFoundError(f"{path} not found", code=404)
        if status == 429:
            raise QuotaExceededError(f"{self.key} is throttling requests", code=429, reset_at=_retry_after(response))
        if status >= 500:
            raise TransientError(f"{self.key} returned HTTP {status}", status_code=status)
        if status >= 400:
            raise UpstreamError(f"{self.key} returned HTTP {status}", code=status)

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Invalid JSON from {self.key}: {e}", code=status) from e

    @staticmethod
    def _expect_dict(payload: Any, what: str) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"Expected an object for {what}, got {type(payload).__name__}")
        return payload

    def _search_result(self, payload: Any) -> Dict[str, Any]:
        data = self._expect_dict(payload, "search")
        products = normalize_batch(list(data.get("products") or []))
        return {
            "products": products,
            "total_results": int(data.get("total_results", len(products))),
            "current_page": int(data.get("current_page", data.get("page", 1))),
            "total_pages": int(data.get("total_pages", 1)),
        }

    async def _fetch_search(self, keyword: str, options: Dict[str, Any]) -> Dict[str, Any]:
        payload = await self._get_json("/search", {"keyword": keyword, **options})
        return self._search_result(payload)

    async def _fetch_product(self, asin: str, options: Dict[str, Any]) -> Dict[str, Any]:
        payload = self._expect_dict(await self._get_json(f"/products/{asin}", options), "product")
        return normalize_product(payload.get("product", payload))

    async def _fetch_products(self, asins: List[str], options: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        payload = self._expect_dict(
            await self._get_json("/products", {"asins": ",".join(asins), **options}),
            "products",
        )
        products = {}
        for raw in payload.get("products") or []:
            product = normalize_product(raw)
            if product["asin"]:
                products[product["asin"]] = product
        return products

    async def _fetch_variations(self, asin: str, options: Dict[str, Any]) -> Dict[str, Any]:
        payload = self._expect_dict(await self._get_json(f"/products/{asin}/variations", options), "variations")
        return {
            "parent_asin": payload.get("parent_asin", asin),
            "variations": normalize_batch(list(payload.get("variations") or [])),
            "dimensions": list(payload.get("dimensions") or []),
        }

    async def _fetch_offers(self, asin: str, options: Dict[str, Any]) -> Dict[str, Any]:
        payload = self._expect_dict(await self._get_json(f"/products/{asin}/offers", options), "offers")
        offers = list(payload.get("offers") or [])
        summary = payload.get("summary") or {}
        return {
            "summary": {
                "lowest_price": summary.get("lowest_price", min((o.get("price", 0) for o in offers), default=0)),
                "total_offers": summary.get("total_offers", len(offers)),
            },
            "offers": offers,
        }

    async def _fetch_reviews(self, asin: str, options: Dict[str, Any]) -> Dict[str, Any]:
        payload = self._expect_dict(await self._get_json(f"/products/{asin}/reviews", options), "reviews")
        return {
            "rating": float(payload.get("rating", 0) or 0),
            "total_reviews": int(payload.get("total_reviews", 0) or 0),
            "stars_breakdown": payload.get("stars_breakdown") or {},
        }

    async def _fetch_bestsellers(self, category: str, options: Dict[str, Any]) -> Dict[str, Any]:
        return self._search_result(await self._get_json("/bestsellers", {"category": category, **options}))

    async def _fetch_new_releases(self, category: str, options: Dict[str, Any]) -> Dict[str, Any]:
        return self._search_result(await self._get_json("/new-releases", {"category": category, **options}))

    async def _fetch_categories(self, options: Dict[str, Any]) -> Dict[str, Any]:
        payload = self._expect_dict(await self._get_json("/categories", options), "categories")
        return {"categories": list(payload.get("categories") or [])}
