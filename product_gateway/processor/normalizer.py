"""Data normalizer for converting heterogeneous product data to the gateway schema.

Every normalized product carries the same keys with explicit defaults so
callers never branch on missing fields.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set


PRODUCT_FIELDS = (
    "asin",
    "title",
    "description",
    "price",
    "currency",
    "availability",
    "url",
    "image_url",
    "rating",
    "reviews_count",
    "is_prime",
    "updated_at",
)


def _first(raw_product: Dict, fields: Iterable[str]) -> Any:
    for field in fields:
        value = raw_product.get(field)
        if value is not None and value != "":
            return value
    return None


def _extract_id(raw_product: Dict) -> str:
    """
    Extract the product identifier from various field names.

    Tries: asin, ASIN, id, product_id, item_id, sku

    Args:
        raw_product: Raw product data

    Returns:
        String identifier, or "" if not found
    """
    value = _extract_first_str(raw_product, ["asin", "ASIN", "id", "product_id", "item_id", "sku"])
    return value or ""


def _extract_first_str(raw_product: Dict, fields: List[str]) -> Optional[str]:
    value = _first(raw_product, fields)
    if value is None:
        return None
    return str(value).strip()


def _extract_title(raw_product: Dict) -> str:
    """
    Extract product title from various field names.

    Falls back to a truncated description when no title-like field exists.
    """
    title = _extract_first_str(raw_product, ["title", "name", "product_name", "productName"])
    if title:
        return title

    description = raw_product.get("description")
    if description and isinstance(description, str):
        return description[:100].strip() + ("..." if len(description) > 100 else "")

    return ""


def _parse_amount(value: Any) -> Optional[float]:
    """Parse numbers and price strings such as "$10.99", "10,99" or "1,299.00"."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = value.strip().replace("$", "").replace("€", "").replace("£", "")
        # Handle comma as decimal separator (European format)
        if "," in cleaned and "." not in cleaned:
            cleaned = cleaned.replace(",", ".")
        cleaned = cleaned.replace(",", "")
        try:
            return float(cleaned)
        except ValueError:
            return None
    if isinstance(value, dict):
        return _parse_amount(_first(value, ["amount", "value", "Amount"]))
    return None


def _extract_price(raw_product: Dict) -> float:
    """
    Extract and normalize price.

    Tries: price, sale_price, amount, cost. Nested ``{"amount": ...}`` objects
    and price strings are accepted. Negative or unparsable prices become 0.0.
    """
    for field in ("price", "sale_price", "amount", "cost"):
        price = _parse_amount(raw_product.get(field))
        if price is not None and price >= 0:
            return round(price, 2)
    return 0.0


def _extract_currency(raw_product: Dict) -> str:
    currency = _extract_first_str(raw_product, ["currency", "currency_code"])
    if currency:
        return currency.upper()
    price = raw_product.get("price")
    if isinstance(price, dict):
        nested = _extract_first_str(price, ["currency", "Currency"])
        if nested:
            return nested.upper()
    return "USD"


def _to_float(value: Any) -> float:
    parsed = _parse_amount(value)
    return parsed if parsed is not None else 0.0


def _to_int(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    try:
        return int(float(str(value).replace(",", "")))
    except ValueError:
        return 0


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _extract_image(raw_product: Dict) -> str:
    image = _first(raw_product, ["image_url", "image", "main_image", "thumbnail"])
    if isinstance(image, dict):
        image = _first(image, ["url", "link", "URL"])
    if isinstance(image, list) and image:
        first = image[0]
        image = first.get("url") if isinstance(first, dict) else first
    return str(image) if image else ""


def normalize_product(raw_product: Dict, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Normalize a single product to the gateway schema.

    Handles real-world API differences:
    - Different field names (asin vs id vs product_id)
    - Numeric or string prices, nested price objects
    - Missing fields (explicit defaults)

    Args:
        raw_product: Raw product data from an upstream API
        now: Timestamp used for ``updated_at`` (defaults to current UTC time)

    Returns:
        Dictionary containing exactly the keys of ``PRODUCT_FIELDS``

    Examples:
        >>> normalize_product({"asin": "B0001", "name": "Lamp", "price": "$9.99"})["price"]
        9.99
        >>> normalize_product({})["availability"]
        'Unknown'
    """
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    description = raw_product.get("description")

    return {
        "asin": _extract_id(raw_product),
        "title": _extract_title(raw_product),
        "description": description.strip() if isinstance(description, str) else "",
        "price": _extract_price(raw_product),
        "currency": _extract_currency(raw_product),
        "availability": _extract_first_str(raw_product, ["availability", "stock_status"]) or "Unknown",
        "url": _extract_first_str(raw_product, ["url", "link", "detail_page_url"]) or "",
        "image_url": _extract_image(raw_product),
        "rating": _to_float(_first(raw_product, ["rating", "stars", "average_rating"])),
        "reviews_count": _to_int(_first(raw_product, ["reviews_count", "ratings_total", "review_count"])),
        "is_prime": _to_bool(raw_product.get("is_prime", False)),
        "updated_at": stamp,
    }


def normalize_batch(
    raw_products: List[Dict],
    seen_ids: Set[str] = None
) -> List[Dict[str, Any]]:
    """
    Normalize batch of products with deduplication.

    Args:
        raw_products: List of raw product data
        seen_ids: Set of already seen identifiers for deduplication

    Returns:
        List of normalized products (deduplicated if seen_ids provided)
    """
    products = []

    for raw in raw_products:
        product = normalize_product(raw)

        if seen_ids is not None and product["asin"]:
            if product["asin"] in seen_ids:
                continue  # Skip duplicate
            seen_ids.add(product["asin"])

        products.append(product)

    return products
