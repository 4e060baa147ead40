"""FastAPI mock catalogue API for local runs and integration tests."""

import os
import random
import time
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Query


CATEGORIES = ["electronics", "books", "home", "toys", "clothing"]


def make_asin(number: int) -> str:
    return f"B{number:09d}"


def build_catalogue(size: int, seed: int, use_variant_schema: bool = False) -> Dict[str, Dict[str, Any]]:
    """
    Generate a deterministic catalogue keyed by ASIN.

    The variant schema uses ``product_id``/``name``/string ``cost`` fields
    so clients exercise their normalization.
    """
    rng = random.Random(seed)
    catalogue: Dict[str, Dict[str, Any]] = {}
    for number in range(1, size + 1):
        asin = make_asin(number)
        category = CATEGORIES[number % len(CATEGORIES)]
        price = round(rng.uniform(5.0, 500.0), 2)
        rating = round(rng.uniform(1.0, 5.0), 1)
        reviews = rng.randint(0, 5000)
        if use_variant_schema:
            product = {
                "product_id": asin,
                "name": f"{category.title()} item {number}",
                "cost": f"${price}",
                "stars": rating,
                "ratings_total": reviews,
            }
        else:
            product = {
                "asin": asin,
                "title": f"{category.title()} item {number}",
                "price": price,
                "currency": "USD",
                "rating": rating,
                "reviews_count": reviews,
            }
        product.update({
            "description": f"Mock {category} product number {number}",
            "availability": "In Stock" if number % 7 else "Out of Stock",
            "url": f"https://example.com/dp/{asin}",
            "image_url": f"https://example.com/images/{asin}.jpg",
            "is_prime": number % 2 == 0,
            "category": category,
        })
        catalogue[asin] = product
    return catalogue


def create_mock_app(
    name: str,
    api_key: Optional[str] = "test-key",
    catalogue_size: int = 100,
    random_seed: Optional[int] = None,
    error_rate: float = 0.0,
    extra_latency_ms: int = 0,
    use_variant_schema: bool = False,
) -> FastAPI:
    """
    Create a FastAPI mock catalogue server with configurable behavior.

    Args:
        name: Server name (e.g., "catalogue-a")
        api_key: Value required in the ``X-API-Key`` header; ``None`` disables the check
        catalogue_size: Number of products served
        random_seed: Seed for deterministic data and errors
        error_rate: Probability of returning 5xx errors (0.0-1.0)
        extra_latency_ms: Additional latency in milliseconds
        use_variant_schema: Use variant field names (product_id, name, cost)

    Returns:
        FastAPI application
    """
    app = FastAPI(title=f"Mock Catalogue API - {name}")
    seed = random_seed if random_seed is not None else 42
    catalogue = build_catalogue(catalogue_size, seed, use_variant_schema)
    error_rng = random.Random(seed)

    def check(x_api_key: Optional[str]) -> None:
        if extra_latency_ms > 0:
            time.sleep(extra_latency_ms / 1000.0)
        if api_key is not None and x_api_key != api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")
        if error_rate > 0 and error_rng.random() < error_rate:
            raise HTTPException(status_code=error_rng.choice([500, 502, 503]), detail="Simulated error")

    def lookup(asin: str) -> Dict[str, Any]:
        product = catalogue.get(asin)
        if product is None:
            raise HTTPException(status_code=404, detail=f"{asin} not found")
        return product

    def listing(products: List[Dict[str, Any]], page: int, per_page: int) -> Dict[str, Any]:
        total = len(products)
        start = (page - 1) * per_page
        return {
            "products": products[start:start + per_page],
            "total_results": total,
            "current_page": page,
            "total_pages": max(1, -(-total // per_page)),
        }

    @app.get("/products/{asin}")
    async def get_product(asin: str, x_api_key: Optional[str] = Header(default=None)):
        """Get a single product."""
        check(x_api_key)
        return {"product": lookup(asin)}

    @app.get("/products")
    async def get_products(asins: str = "", x_api_key: Optional[str] = Header(default=None)):
        """Get up to 50 products; unknown ASINs are left out."""
        check(x_api_key)
        requested = [a for a in asins.split(",") if a]
        if len(requested) > 50:
            raise HTTPException(status_code=400, detail="At most 50 ASINs per request")
        return {"products": [catalogue[a] for a in requested if a in catalogue]}

    @app.get("/search")
    async def search(
        keyword: str = "",
        page: int = Query(default=1, ge=1),
        per_page: int = Query(default=10, ge=1, le=50),
        x_api_key: Optional[str] = Header(default=None),
    ):
        """Search titles and descriptions."""
        check(x_api_key)
        needle = keyword.lower()
        matches = [
            p for p in catalogue.values()
            if needle in str(p.get("title", p.get("name", ""))).lower()
            or needle in p["description"].lower()
            or needle == p["category"]
        ]
        return listing(matches, page, per_page)

    @app.get("/products/{asin}/variations")
    async def variations(asin: str, x_api_key: Optional[str] = Header(default=None)):
        check(x_api_key)
        product = lookup(asin)
        return {
            "parent_asin": asin,
            "variations": [
                {**product, "asin": f"{asin}-{color}", "title": f"{product.get('title', asin)} ({color})"}
                for color in ("red", "blue")
            ],
            "dimensions": ["color"],
        }

    @app.get("/products/{asin}/offers")
    async def offers(asin: str, x_api_key: Optional[str] = Header(default=None)):
        check(x_api_key)
        product = lookup(asin)
        price = float(product.get("price") or str(product.get("cost", "0")).lstrip("$"))
        listed = [
            {"seller": "Mock Retail", "price": price, "condition": "New"},
            {"seller": "Mock Outlet", "price": round(price * 0.9, 2), "condition": "Used"},
        ]
        return {"summary": {"lowest_price": min(o["price"] for o in listed), "total_offers": len(listed)},
                "offers": listed}

    @app.get("/products/{asin}/reviews")
    async def reviews(asin: str, x_api_key: Optional[str] = Header(default=None)):
        check(x_api_key)
        product = lookup(asin)
        total = product.get("reviews_count", product.get("ratings_total", 0))
        return {
            "rating": product.get("rating", product.get("stars", 0.0)),
            "total_reviews": total,
            "stars_breakdown": {"5": total // 2, "4": total // 4, "3": total // 8, "2": total // 16,
                                "1": total - total // 2 - total // 4 - total // 8 - total // 16},
        }

    @app.get("/bestsellers")
    async def bestsellers(
        category: str = "",
        page: int = Query(default=1, ge=1),
        per_page: int = Query(default=10, ge=1, le=50),
        x_api_key: Optional[str] = Header(default=None),
    ):
        check(x_api_key)
        products = [p for p in catalogue.values() if not category or p["category"] == category]
        products.sort(key=lambda p: p.get("reviews_count", p.get("ratings_total", 0)), reverse=True)
        return listing(products, page, per_page)

    @app.get("/new-releases")
    async def new_releases(
        category: str = "",
        page: int = Query(default=1, ge=1),
        per_page: int = Query(default=10, ge=1, le=50),
        x_api_key: Optional[str] = Header(default=None),
    ):
        check(x_api_key)
        products = [p for p in catalogue.values() if not category or p["category"] == category]
        return listing(list(reversed(products)), page, per_page)

    @app.get("/categories")
    async def categories(x_api_key: Optional[str] = Header(default=None)):
        check(x_api_key)
        return {"categories": [{"id": c, "name": c.title()} for c in CATEGORIES]}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "server": name, "products": len(catalogue)}

    return app


def create_catalogue_a() -> FastAPI:
    """Catalogue A: standard schema (asin, title, price)."""
    return create_mock_app(
        name="catalogue-a",
        api_key=os.getenv("API_KEY", "test-key"),
        random_seed=int(os.getenv("RANDOM_SEED", 42)),
        error_rate=float(os.getenv("ERROR_RATE", 0.0)),
        extra_latency_ms=int(os.getenv("EXTRA_LATENCY_MS", 0)),
        catalogue_size=int(os.getenv("CATALOGUE_SIZE", 100)),
    )


def create_catalogue_b() -> FastAPI:
    """Catalogue B: variant schema (product_id, name, string cost)."""
    return create_mock_app(
        name="catalogue-b",
        api_key=os.getenv("API_KEY", "test-key"),
        random_seed=int(os.getenv("RANDOM_SEED", 43)),
        error_rate=float(os.getenv("ERROR_RATE", 0.0)),
        extra_latency_ms=int(os.getenv("EXTRA_LATENCY_MS", 0)),
        catalogue_size=int(os.getenv("CATALOGUE_SIZE", 100)),
        use_variant_schema=True,
    )


def create_app() -> FastAPI:
    """
    Factory function for uvicorn --factory.

    Reads SERVER_NAME from environment to determine which catalogue to create.
    Defaults to catalogue-a if not specified.
    """
    server_map = {
        "catalogue-a": create_catalogue_a,
        "catalogue-b": create_catalogue_b,
    }
    factory = server_map.get(os.getenv("SERVER_NAME", "catalogue-a"), create_catalogue_a)
    return factory()


# Default app for running directly
app = create_app()
