"""Test fixtures with deterministic data for CI stability."""

import random
from typing import Any, Dict, List


def make_asins(count: int, start: int = 1) -> List[str]:
    return [f"B{number:09d}" for number in range(start, start + count)]


def get_sample_products(count: int = 20, seed: int = 42) -> List[Dict[str, Any]]:
    """
    Generate deterministic raw product payloads as a REST catalogue returns them.

    Args:
        count: Number of products to generate
        seed: Random seed for deterministic results

    Returns:
        List of product dictionaries
    """
    rng = random.Random(seed)
    products = []
    for asin in make_asins(count):
        products.append({
            "asin": asin,
            "title": f"Product {asin}",
            "price": round(rng.uniform(10.0, 500.0), 2),
            "currency": "USD",
            "rating": round(rng.uniform(1.0, 5.0), 1),
            "reviews_count": rng.randint(0, 1000),
        })
    return products


def normalized_product(asin: str, price: float = 19.99) -> Dict[str, Any]:
    """A product already in the gateway schema."""
    return {
        "asin": asin,
        "title": f"Product {asin}",
        "description": "",
        "price": price,
        "currency": "USD",
        "availability": "In Stock",
        "url": f"https://example.com/dp/{asin}",
        "image_url": "",
        "rating": 4.5,
        "reviews_count": 10,
        "is_prime": False,
        "updated_at": "2024-01-01T00:00:00+00:00",
    }


def paapi_item(asin: str, price: float = 29.99) -> Dict[str, Any]:
    """One item as returned in ``ItemsResult.Items`` by PA-API 5.0."""
    return {
        "ASIN": asin,
        "DetailPageURL": f"https://www.amazon.com/dp/{asin}?tag=test-20",
        "ItemInfo": {
            "Title": {"DisplayValue": f"PA-API item {asin}"},
            "Features": {"DisplayValues": ["Durable", "Lightweight"]},
        },
        "Images": {"Primary": {"Large": {"URL": f"https://m.media-amazon.com/images/{asin}.jpg"}}},
        "Offers": {
            "Listings": [{
                "Price": {"Amount": price, "Currency": "USD"},
                "Availability": {"Message": "In Stock"},
                "DeliveryInfo": {"IsPrimeEligible": True},
            }],
            "Summaries": [{"OfferCount": 3}],
        },
        "CustomerReviews": {"StarRating": {"Value": 4.4}, "Count": 1234},
    }
