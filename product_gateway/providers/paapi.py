"""Amazon Product Advertising API 5.0 provider."""

import json
from typing import Any, Dict, List, Optional

from product_gateway.fetcher.http_client import AsyncHTTPClient
from product_gateway.models.data_models import Operation
from product_gateway.processor.normalizer import normalize_product
from product_gateway.providers.base import ProviderBase
from product_gateway.providers.errors import (
    AuthError,
    MalformedResponseError,
    NotFoundError,
    QuotaExceededError,
    TransientError,
    UpstreamError,
)
from product_gateway.providers.paapi_auth import AwsV4Signer, RequestSigner


API_HOSTS = {
    "US": "webservices.amazon.com",
    "UK": "webservices.amazon.co.uk",
    "DE": "webservices.amazon.de",
    "FR": "webservices.amazon.fr",
    "JP": "webservices.amazon.co.jp",
    "CA": "webservices.amazon.ca",
    "IT": "webservices.amazon.it",
    "ES": "webservices.amazon.es",
    "IN": "webservices.amazon.in",
    "CN": "webservices.amazon.cn",
    "MX": "webservices.amazon.com.mx",
    "BR": "webservices.amazon.com.br",
    "AU": "webservices.amazon.com.au",
    "NL": "webservices.amazon.nl",
    "AE": "webservices.amazon.ae",
    "SG": "webservices.amazon.sg",
    "TR": "webservices.amazon.com.tr",
    "SA": "webservices.amazon.sa",
    "SE": "webservices.amazon.se",
    "PL": "webservices.amazon.pl",
}

REGIONS = {
    "US": "us-east-1", "CA": "us-east-1", "MX": "us-east-1", "BR": "us-east-1",
    "UK": "eu-west-1", "DE": "eu-west-1", "FR": "eu-west-1", "IT": "eu-west-1",
    "ES": "eu-west-1", "IN": "eu-west-1", "NL": "eu-west-1", "AE": "eu-west-1",
    "TR": "eu-west-1", "SA": "eu-west-1", "SE": "eu-west-1", "PL": "eu-west-1",
    "JP": "us-west-2", "CN": "us-west-2", "AU": "us-west-2", "SG": "us-west-2",
}

MARKETPLACE_NAMES = {
    "US": "United States", "UK": "United Kingdom", "DE": "Germany", "FR": "France",
    "JP": "Japan", "CA": "Canada", "IT": "Italy", "ES": "Spain", "IN": "India",
    "CN": "China", "MX": "Mexico", "BR": "Brazil", "AU": "Australia",
    "NL": "Netherlands", "AE": "UAE", "SG": "Singapore", "TR": "Turkey",
    "SA": "Saudi Arabia", "SE": "Sweden", "PL": "Poland",
}

OPERATIONS = {
    "/paapi5/getitems": "GetItems",
    "/paapi5/searchitems": "SearchItems",
    "/paapi5/getvariations": "GetVariations",
    "/paapi5/getbrowsenodes": "GetBrowseNodes",
}

TARGET_PREFIX = "com.amazon.paapi5.v1.ProductAdvertisingAPIv1."

PRODUCT_RESOURCES = [
    "ItemInfo.Title",
    "ItemInfo.Features",
    "ItemInfo.ProductInfo",
    "ItemInfo.TechnicalInfo",
    "Images.Primary.Large",
    "Images.Variants.Large",
    "Offers.Listings.Price",
    "Offers.Listings.Availability.Message",
    "Offers.Listings.Condition",
    "Offers.Listings.DeliveryInfo.IsPrimeEligible",
    "Offers.Summaries.LowestPrice",
    "Offers.Summaries.OfferCount",
    "CustomerReviews.StarRating",
    "CustomerReviews.Count",
    "BrowseNodeInfo.BrowseNodes",
    "BrowseNodeInfo.BrowseNodes.SalesRank",
    "ParentASIN",
]

SEARCH_RESOURCES = [
    "ItemInfo.Title",
    "Images.Primary.Medium",
    "Offers.Listings.Price",
    "Offers.Listings.DeliveryInfo.IsPrimeEligible",
    "CustomerReviews.StarRating",
    "CustomerReviews.Count",
]

VARIATION_RESOURCES = [
    "VariationSummary.Price.HighestPrice",
    "VariationSummary.Price.LowestPrice",
    "VariationSummary.VariationDimension",
    "ItemInfo.Title",
    "Images.Primary.Medium",
]

QUOTA_ERRORS = {"TooManyRequests", "RequestThrottled"}
AUTH_ERRORS = {"InvalidAssociate", "UnauthorizedException", "InvalidSignature", "IncompleteSignature"}


def _dig(data: Any, *path: Any) -> Any:
    for step in path:
        if isinstance(data, dict):
            data = data.get(step)
        elif isinstance(data, list) and isinstance(step, int):
            data = data[step] if len(data) > step else None
        else:
            return None
        if data is None:
            return None
    return data


def parse_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Map one PA-API item to the normalized product schema."""
    listing = _dig(item, "Offers", "Listings", 0) or {}
    features = _dig(item, "ItemInfo", "Features", "DisplayValues") or []
    raw = {
        "asin": item.get("ASIN"),
        "title": _dig(item, "ItemInfo", "Title", "DisplayValue"),
        "description": " ".join(features),
        "price": _dig(listing, "Price", "Amount"),
        "currency": _dig(listing, "Price", "Currency"),
        "availability": _dig(listing, "Availability", "Message"),
        "url": item.get("DetailPageURL"),
        "image_url": _dig(item, "Images", "Primary", "Large", "URL") or _dig(item, "Images", "Primary", "Medium", "URL"),
        "rating": _dig(item, "CustomerReviews", "StarRating", "Value"),
        "reviews_count": _dig(item, "CustomerReviews", "Count"),
        "is_prime": bool(_dig(listing, "DeliveryInfo", "IsPrimeEligible")),
    }
    product = normalize_product(raw)
    offer_count = _dig(item, "Offers", "Summaries", 0, "OfferCount")
    if offer_count is not None:
        product["offers_count"] = int(offer_count)
    parent = item.get("ParentASIN")
    if parent:
        product["parent_asin"] = parent
    return product


class PaApiProvider(ProviderBase):
    """Product Advertising API 5.0 with AWS SigV4 request signing."""

    NAME = "Amazon PA-API 5.0"
    API_VERSION = "5.0"
    MAX_BATCH_SIZE = 10
    MAX_SEARCH_ITEMS = 10
    REQUIRED_CREDENTIALS = ("api_key", "api_secret", "partner_tag")
    DEFAULT_CAPABILITIES = {
        Operation.SEARCH,
        Operation.PRODUCT,
        Operation.MULTIPLE_PRODUCTS,
        Operation.VARIATIONS,
        Operation.OFFERS,
        Operation.REVIEWS,
        Operation.BESTSELLERS,
        Operation.NEW_RELEASES,
        Operation.CATEGORIES,
    }

    def __init__(
        self,
        config,
        executor,
        http_client: Optional[AsyncHTTPClient] = None,
        signer: Optional[RequestSigner] = None,
        **kwargs,
    ):
        self.http_client = http_client or AsyncHTTPClient()
        self._fixed_signer = signer
        self.signer: Optional[RequestSigner] = signer
        super().__init__(config, executor, **kwargs)
        self.max_batch_size = min(self.max_batch_size, self.MAX_BATCH_SIZE)

    def _on_credentials_changed(self) -> None:
        if self._fixed_signer is None:
            self.signer = AwsV4Signer(
                self.credentials["api_key"],
                self.credentials["api_secret"],
                self.region,
            )

    @property
    def host(self) -> str:
        return API_HOSTS.get(self.marketplace, API_HOSTS["US"])

    @property
    def region(self) -> str:
        return REGIONS.get(self.marketplace, REGIONS["US"])

    @property
    def marketplace_domain(self) -> str:
        return self.host.replace("webservices.", "www.", 1)

    def _base_request(self) -> Dict[str, Any]:
        return {
            "PartnerTag": self.credentials.get("partner_tag", ""),
            "PartnerType": "Associates",
            "Marketplace": self.marketplace_domain,
        }

    async def _call(self, path: str, request_data: Dict[str, Any]) -> Dict[str, Any]:
        """POST a signed request and return the decoded body."""
        url = f"https://{self.host}{path}"
        body = json.dumps(request_data)
        target = TARGET_PREFIX + OPERATIONS.get(path, "Unknown")
        headers = self.signer.get_signed_headers("POST", url, body, self.host, target)

        response = await self.http_client.post(url, content=body, headers=headers)
        try:
            data = response.json()
        except ValueError as e:
            if response.status_code >= 500:
                raise TransientError(f"PA-API returned HTTP {response.status_code}", status_code=response.status_code) from e
            raise MalformedResponseError("Invalid JSON response from PA-API", code=response.status_code) from e

        if not isinstance(data, dict):
            raise MalformedResponseError("Unexpected PA-API response shape", code=response.status_code)

        if response.status_code != 200 or data.get("Errors"):
            self._raise_for_errors(response.status_code, data)
        return data

    def _raise_for_errors(self, status: int, data: Dict[str, Any]) -> None:
        """Map PA-API error codes to provider errors; ``ItemsNotFound`` is not an error."""
        errors = data.get("Errors") or []
        if not errors:
            if status >= 500:
                raise TransientError(f"PA-API returned HTTP {status}", status_code=status)
            raise UpstreamError("Unknown PA-API error", code=status)

        code = errors[0].get("Code", "UnknownError")
        message = errors[0].get("Message", "Unknown error occurred")

        if code in QUOTA_ERRORS:
            raise QuotaExceededError(message, code=429, details=errors)
        if code in AUTH_ERRORS:
            raise AuthError(message, code=401, details=errors)
        if code == "ItemsNotFound":
            return
        # Per-item errors (e.g. ItemNotAccessible) accompany partial results
        if status == 200 and (data.get("ItemsResult") or data.get("SearchResult")):
            return
        if status >= 500:
            raise TransientError(message, status_code=status, details=errors)
        raise UpstreamError(message, code=status, details=errors)

    async def _fetch_products(self, asins: List[str], options: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        if len(asins) > self.MAX_BATCH_SIZE:
            raise UpstreamError(f"PA-API allows maximum {self.MAX_BATCH_SIZE} ASINs per request")
        resources = list(PRODUCT_RESOURCES)
        if options.get("include_variations"):
            resources.append("VariationSummary.VariationDimension")
        data = await self._call("/paapi5/getitems", {
            **self._base_request(),
            "ItemIds": list(asins),
            "ItemIdType": "ASIN",
            "Resources": resources,
        })
        items = _dig(data, "ItemsResult", "Items") or []
        products = {}
        for item in items:
            product = parse_item(item)
            if product["asin"]:
                products[product["asin"]] = product
        return products

    async def _fetch_product(self, asin: str, options: Dict[str, Any]) -> Dict[str, Any]:
        products = await self._fetch_products([asin], options)
        if asin not in products:
            raise NotFoundError(f"Item {asin} not found")
        return products[asin]

    async def _fetch_search(self, keyword: str, options: Dict[str, Any]) -> Dict[str, Any]:
        per_page = min(int(options.get("per_page", self.MAX_SEARCH_ITEMS)), self.MAX_SEARCH_ITEMS)
        page = int(options.get("page", 1))
        request: Dict[str, Any] = {
            **self._base_request(),
            "SearchIndex": options.get("search_index", "All"),
            "ItemCount": per_page,
            "ItemPage": page,
            "Resources": list(SEARCH_RESOURCES),
        }
        if keyword:
            request["Keywords"] = keyword
        if options.get("browse_node"):
            request["BrowseNodeId"] = str(options["browse_node"])
        if options.get("sort"):
            request["SortBy"] = options["sort"]
        if options.get("min_price") is not None:
            request["MinPrice"] = int(float(options["min_price"]) * 100)
        if options.get("max_price") is not None:
            request["MaxPrice"] = int(float(options["max_price"]) * 100)

        data = await self._call("/paapi5/searchitems", request)
        result = data.get("SearchResult") or {}
        products = [parse_item(item) for item in result.get("Items") or []]
        total = int(result.get("TotalResultCount", len(products)))
        return {
            "products": products,
            "total_results": total,
            "current_page": page,
            "total_pages": max(1, -(-total // per_page)) if per_page else 1,
        }

    async def _fetch_variations(self, asin: str, options: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._call("/paapi5/getvariations", {
            **self._base_request(),
            "ASIN": asin,
            "VariationPage": int(options.get("page", 1)),
            "Resources": list(VARIATION_RESOURCES),
        })
        result = data.get("VariationsResult") or {}
        summary = result.get("VariationSummary") or {}
        return {
            "parent_asin": asin,
            "variations": [parse_item(item) for item in result.get("Items") or []],
            "dimensions": [d.get("Name") for d in summary.get("VariationDimensions") or [] if d.get("Name")],
            "variation_count": summary.get("VariationCount", 0),
        }

    async def _fetch_categories(self, options: Dict[str, Any]) -> Dict[str, Any]:
        parent_id = str(options.get("parent_id", "0"))
        data = await self._call("/paapi5/getbrowsenodes", {
            **self._base_request(),
            "BrowseNodeIds": [parent_id],
            "Resources": ["BrowseNodes.Children", "BrowseNodes.Ancestor"],
        })
        nodes = _dig(data, "BrowseNodesResult", "BrowseNodes") or []
        categories = []
        for node in nodes:
            categories.append({
                "id": node.get("Id"),
                "name": node.get("DisplayName", ""),
                "children": [
                    {"id": child.get("Id"), "name": child.get("DisplayName", "")}
                    for child in node.get("Children") or []
                ],
            })
        return {"categories": categories}

    def get_supported_marketplaces(self) -> Dict[str, str]:
        return dict(MARKETPLACE_NAMES)

    def get_provider_info(self) -> Dict[str, Any]:
        info = super().get_provider_info()
        info["limitations"].update({
            "max_asins_per_request": self.MAX_BATCH_SIZE,
            "max_search_results": 100,
            "rate_limit_per_second": 1,
        })
        return info
