"""Unit tests for mock servers."""

import pytest
from fastapi.testclient import TestClient

from product_gateway.mock_servers import build_catalogue, create_catalogue_b, create_mock_app, make_asin


HEADERS = {"X-API-Key": "test-key"}


class TestMockServer:

    @pytest.fixture
    def app(self):
        return create_mock_app(name="test-server", catalogue_size=20, random_seed=42)

    @pytest.fixture
    def client(self, app):
        return TestClient(app)

    def test_health_endpoint(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "server": "test-server", "products": 20}

    def test_missing_api_key(self, client):
        assert client.get("/products/B000000001").status_code == 401

    def test_get_product(self, client):
        response = client.get("/products/B000000001", headers=HEADERS)
        assert response.status_code == 200
        product = response.json()["product"]
        assert product["asin"] == "B000000001"
        assert product["title"] == "Books item 1"

    def test_unknown_product(self, client):
        assert client.get("/products/B999999999", headers=HEADERS).status_code == 404

    def test_get_products_skips_unknown(self, client):
        response = client.get("/products", params={"asins": "B000000001,B999999999,B000000002"}, headers=HEADERS)
        assert [p["asin"] for p in response.json()["products"]] == ["B000000001", "B000000002"]

    def test_get_products_limit(self, client):
        asins = ",".join(make_asin(n) for n in range(1, 52))
        assert client.get("/products", params={"asins": asins}, headers=HEADERS).status_code == 400

    def test_search_paginates(self, client):
        response = client.get("/search", params={"keyword": "item", "per_page": 5, "page": 2}, headers=HEADERS)
        data = response.json()
        assert data["total_results"] == 20
        assert data["total_pages"] == 4
        assert data["current_page"] == 2
        assert len(data["products"]) == 5

    def test_search_by_category(self, client):
        data = client.get("/search", params={"keyword": "toys"}, headers=HEADERS).json()
        assert data["total_results"] == 4
        assert all(p["category"] == "toys" for p in data["products"])

    def test_offers_and_reviews(self, client):
        offers = client.get("/products/B000000001/offers", headers=HEADERS).json()
        assert offers["summary"]["total_offers"] == 2

        reviews = client.get("/products/B000000001/reviews", headers=HEADERS).json()
        assert sum(reviews["stars_breakdown"].values()) == reviews["total_reviews"]

    def test_variations(self, client):
        data = client.get("/products/B000000003/variations", headers=HEADERS).json()
        assert [v["asin"] for v in data["variations"]] == ["B000000003-red", "B000000003-blue"]

    def test_bestsellers_sorted_by_reviews(self, client):
        products = client.get("/bestsellers", params={"per_page": 20}, headers=HEADERS).json()["products"]
        counts = [p["reviews_count"] for p in products]
        assert counts == sorted(counts, reverse=True)

    def test_categories(self, client):
        data = client.get("/categories", headers=HEADERS).json()
        assert [c["id"] for c in data["categories"]] == ["electronics", "books", "home", "toys", "clothing"]


class TestErrorInjection:

    def test_full_error_rate(self):
        client = TestClient(create_mock_app(name="flaky", error_rate=1.0, random_seed=1))
        response = client.get("/products/B000000001", headers=HEADERS)
        assert response.status_code in (500, 502, 503)

    def test_api_key_check_can_be_disabled(self):
        client = TestClient(create_mock_app(name="open", api_key=None))
        assert client.get("/products/B000000001").status_code == 200


def test_catalogue_is_deterministic():
    assert build_catalogue(10, seed=7) == build_catalogue(10, seed=7)
    assert build_catalogue(10, seed=7) != build_catalogue(10, seed=8)


def test_variant_schema(monkeypatch):
    monkeypatch.delenv("API_KEY", raising=False)
    client = TestClient(create_catalogue_b())
    product = client.get("/products/B000000001", headers=HEADERS).json()["product"]
    assert product["product_id"] == "B000000001"
    assert product["cost"].startswith("$")
    assert "asin" not in product
