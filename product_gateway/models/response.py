"""Uniform response envelope returned to gateway callers."""

import copy
import json
import math
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

from product_gateway.models.data_models import ResponseType


# Parser turning an upstream payload into envelope data
ResponseParser = Callable[[Any], Dict[str, Any]]

API_VERSION = "1.0"


def default_metadata(meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    normalized = {
        "timestamp": time.time(),
        "execution_time": 0.0,
        "credits_used": 0,
        "provider": "",
        "cache_hit": False,
        "api_version": API_VERSION,
    }
    normalized.update(meta or {})
    return normalized


class ApiResponse:
    """
    Response envelope wrapping provider results.

    ``error`` is set exactly when ``success`` is False, and ``metadata``
    always carries ``timestamp``, ``execution_time``, ``credits_used``,
    ``provider``, ``cache_hit`` and ``api_version``.

    Supports mapping-style access to ``data``::

        response = ApiResponse.product({"asin": "B000TEST", "title": "Lamp"})
        response["title"]          # "Lamp"
        "price" in response        # False
    """

    _parsers: Dict[str, ResponseParser] = {}

    def __init__(
        self,
        data: Optional[Dict[str, Any]] = None,
        meta: Optional[Dict[str, Any]] = None,
        response_type: ResponseType = ResponseType.UNKNOWN,
    ):
        self.success = True
        self.type = response_type
        self.data: Dict[str, Any] = dict(data or {})
        self.metadata = default_metadata(meta)
        self.error: Optional[Dict[str, Any]] = None
        self.raw_response: Any = None

    # -- constructors ---------------------------------------------------------

    @classmethod
    def product(cls, product_data: Dict[str, Any], meta: Optional[Dict[str, Any]] = None) -> "ApiResponse":
        return cls(product_data, meta, ResponseType.PRODUCT)

    @classmethod
    def search(cls, results: Any, meta: Optional[Dict[str, Any]] = None) -> "ApiResponse":
        """Build a search envelope from a product list or a result mapping."""
        if isinstance(results, dict):
            products = list(results.get("products", []))
            data = {
                "products": products,
                "total_results": results.get("total_results", len(products)),
                "current_page": results.get("current_page", 1),
                "total_pages": results.get("total_pages", 1),
            }
        else:
            products = list(results or [])
            data = {
                "products": products,
                "total_results": len(products),
                "current_page": 1,
                "total_pages": 1,
            }
        return cls(data, meta, ResponseType.SEARCH)

    @classmethod
    def error(
        cls,
        message: str,
        code: int = 0,
        details: Any = None,
        error_type: str = "api_error",
        meta: Optional[Dict[str, Any]] = None,
    ) -> "ApiResponse":
        response = cls(
            {"error": True, "message": message, "code": code, "details": details},
            meta,
            ResponseType.ERROR,
        )
        response.success = False
        response.error = {"message": message, "code": code, "details": details, "type": error_type}
        return response

    @classmethod
    def register_parser(cls, provider: str, parser: ResponseParser) -> None:
        """Register the parser used by ``from_raw`` for ``provider`` payloads."""
        cls._parsers[provider] = parser

    @classmethod
    def unregister_parser(cls, provider: str) -> None:
        cls._parsers.pop(provider, None)

    @classmethod
    def from_raw(
        cls,
        raw_response: Any,
        provider: str,
        response_type: ResponseType = ResponseType.UNKNOWN,
    ) -> "ApiResponse":
        """
        Build an envelope from an upstream payload.

        Strings are decoded as JSON; a string that is not JSON becomes the
        error message. A parser registered for ``provider`` then maps the
        decoded payload to envelope data. Payloads carrying an ``error`` or
        ``errors`` member produce a failed envelope.

        Args:
            raw_response: Upstream payload (dict, JSON string or other)
            provider: Provider key selecting the parser
            response_type: Envelope type for successful payloads

        Returns:
            ApiResponse with ``raw_response`` retained
        """
        response = cls({}, {"provider": provider}, response_type)
        response.raw_response = raw_response

        payload = raw_response
        if isinstance(raw_response, (str, bytes)):
            try:
                payload = json.loads(raw_response)
            except ValueError:
                text = raw_response.decode("utf-8", "replace") if isinstance(raw_response, bytes) else raw_response
                response._fail({"message": text, "code": 0})
                return response

        if not isinstance(payload, dict):
            payload = {"items": payload} if isinstance(payload, list) else {"value": payload}

        if "error" in payload or "errors" in payload:
            response.data = dict(payload)
            response._fail(payload)
            return response

        parser = cls._parsers.get(provider)
        response.data = dict(parser(payload)) if parser else dict(payload)
        return response

    def _fail(self, payload: Dict[str, Any]) -> None:
        self.success = False
        self.type = ResponseType.ERROR
        self.error = extract_error_info(payload)

    # -- accessors ------------------------------------------------------------

    def is_success(self) -> bool:
        return self.success

    def is_error(self) -> bool:
        return not self.success

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> "ApiResponse":
        self.data[key] = value
        return self

    def has(self, key: str) -> bool:
        return key in self.data

    def get_meta(self, key: Optional[str] = None, default: Any = None) -> Any:
        if key is None:
            return dict(self.metadata)
        return self.metadata.get(key, default)

    def set_meta(self, key: str, value: Any) -> "ApiResponse":
        self.metadata[key] = value
        return self

    def get_error(self) -> Optional[Dict[str, Any]]:
        return self.error

    def get_error_message(self) -> str:
        return self.error["message"] if self.error else ""

    def get_error_code(self) -> int:
        return self.error["code"] if self.error else 0

    def get_raw_response(self) -> Any:
        return self.raw_response

    def get_products(self) -> List[Dict[str, Any]]:
        """Products as a list for both search and single-product envelopes."""
        if self.type == ResponseType.SEARCH:
            return list(self.data.get("products", []))
        if self.type == ResponseType.PRODUCT:
            return [self.data]
        return []

    def get_pagination(self) -> Dict[str, Any]:
        current = self.data.get("current_page", 1)
        total_pages = self.data.get("total_pages", 1)
        return {
            "current_page": current,
            "total_pages": total_pages,
            "total_results": self.data.get("total_results", 0),
            "per_page": self.data.get("per_page", 10),
            "has_next": current < total_pages,
            "has_previous": current > 1,
        }

    # -- transforms -----------------------------------------------------------

    def _has_product_list(self) -> bool:
        return self.type == ResponseType.SEARCH and "products" in self.data

    def filter_products(self, predicate: Callable[[Dict[str, Any]], bool]) -> "ApiResponse":
        if self._has_product_list():
            self.data["products"] = [p for p in self.data["products"] if predicate(p)]
            self.data["total_results"] = len(self.data["products"])
        return self

    def map_products(self, func: Callable[[Dict[str, Any]], Dict[str, Any]]) -> "ApiResponse":
        if self._has_product_list():
            self.data["products"] = [func(p) for p in self.data["products"]]
        elif self.type == ResponseType.PRODUCT:
            self.data = func(self.data)
        return self

    def sort_products(self, field: str, direction: str = "asc") -> "ApiResponse":
        """Sort by ``field``; equal values keep their original order.

        Products missing ``field`` go last in either direction.
        """
        if self._has_product_list():
            products = self.data["products"]
            present = [p for p in products if p.get(field) is not None]
            missing = [p for p in products if p.get(field) is None]
            present = sorted(
                present,
                key=lambda p: p[field],
                reverse=direction.lower() == "desc",
            )
            self.data["products"] = present + missing
        return self

    def paginate(self, page: int, per_page: int = 10) -> "ApiResponse":
        if self._has_product_list():
            products = self.data["products"]
            total = len(products)
            offset = (page - 1) * per_page
            self.data["products"] = products[offset:offset + per_page]
            self.data["current_page"] = page
            self.data["per_page"] = per_page
            self.data["total_pages"] = math.ceil(total / per_page) if per_page > 0 else 1
            self.data["total_results"] = total
        return self

    def merge(self, other: "ApiResponse") -> "ApiResponse":
        """
        Merge ``other`` into this envelope.

        Two search envelopes concatenate their products and recompute the
        total; anything else is a shallow merge where ``other`` wins. Costs
        (``execution_time``, ``credits_used``) are always summed.
        """
        if self.type == ResponseType.SEARCH and other.type == ResponseType.SEARCH:
            self.data["products"] = list(self.data.get("products", [])) + list(other.data.get("products", []))
            self.data["total_results"] = len(self.data["products"])
        else:
            self.data.update(other.data)

        self.metadata["execution_time"] = self.metadata.get("execution_time", 0) + other.metadata.get("execution_time", 0)
        self.metadata["credits_used"] = self.metadata.get("credits_used", 0) + other.metadata.get("credits_used", 0)
        return self

    # -- serialization and caching -------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "type": self.type.value,
            "data": copy.deepcopy(self.data),
            "meta": dict(self.metadata),
            "error": copy.deepcopy(self.error),
        }

    def to_json(self, **kwargs: Any) -> str:
        return json.dumps(self.to_dict(), default=str, **kwargs)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ApiResponse":
        try:
            response_type = ResponseType(raw.get("type", ResponseType.UNKNOWN.value))
        except ValueError:
            response_type = ResponseType.UNKNOWN
        response = cls(raw.get("data") or {}, raw.get("meta") or {}, response_type)
        response.success = bool(raw.get("success", True))
        response.error = raw.get("error")
        if not response.success and response.error is None:
            response.error = extract_error_info(response.data)
        return response

    def cache(self, cache, key: str, ttl: Optional[int] = None) -> bool:
        """Persist the full envelope through ``cache`` (an ``ApiCache``)."""
        return cache.set(f"response_{key}", self.to_dict(), ttl)

    @classmethod
    def from_cache(cls, cache, key: str) -> Optional["ApiResponse"]:
        cached = cache.get(f"response_{key}")
        if cached is None:
            return None
        response = cls.from_dict(cached)
        response.metadata["cache_hit"] = True
        return response

    # -- mapping protocol -----------------------------------------------------

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.data[key] = value

    def __delitem__(self, key: str) -> None:
        del self.data[key]

    def __contains__(self, key: object) -> bool:
        return key in self.data

    def __iter__(self) -> Iterator[str]:
        return iter(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def __bool__(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"ApiResponse(type={self.type.value}, success={self.success})"


def extract_error_info(data: Dict[str, Any]) -> Dict[str, Any]:
    """Pull message/code/details out of the common upstream error shapes."""
    error = data.get("error")
    if isinstance(error, dict):
        source = error
    elif isinstance(data.get("errors"), list) and data["errors"] and isinstance(data["errors"][0], dict):
        source = data["errors"][0]
    else:
        source = data

    message = source.get("message") or source.get("Message")
    if message is None and isinstance(error, str):
        message = error
    code = source.get("code", source.get("Code", data.get("error_code", 0)))
    return {
        "message": message or "Unknown error",
        "code": code,
        "details": source.get("details", data.get("details")),
        "type": data.get("error_type", "api_error"),
    }
