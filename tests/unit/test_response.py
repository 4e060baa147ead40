"""Unit tests for the response envelope."""

import json

import pytest

from product_gateway.cache.api_cache import ApiCache
from product_gateway.models.data_models import ResponseType
from product_gateway.models.response import API_VERSION, ApiResponse


META_KEYS = {"timestamp", "execution_time", "credits_used", "provider", "cache_hit", "api_version"}


def search_response(prices):
    return ApiResponse.search([{"asin": f"B{i}", "price": price} for i, price in enumerate(prices)])


class TestConstructors:

    def test_product_envelope(self):
        response = ApiResponse.product({"asin": "B1", "title": "Lamp"}, {"provider": "catalogue"})
        assert response.success is True
        assert response.type == ResponseType.PRODUCT
        assert response.error is None
        assert response["title"] == "Lamp"
        assert "price" not in response
        assert META_KEYS <= set(response.metadata)
        assert response.get_meta("provider") == "catalogue"
        assert response.get_meta("api_version") == API_VERSION

    def test_search_from_list(self):
        response = ApiResponse.search([{"asin": "B1"}, {"asin": "B2"}])
        assert response.type == ResponseType.SEARCH
        assert response["total_results"] == 2
        assert response.get_pagination()["has_next"] is False

    def test_search_from_mapping_keeps_pagination(self):
        response = ApiResponse.search({
            "products": [{"asin": "B1"}],
            "total_results": 40,
            "current_page": 2,
            "total_pages": 4,
        })
        pagination = response.get_pagination()
        assert pagination["total_results"] == 40
        assert pagination["has_next"] is True
        assert pagination["has_previous"] is True

    def test_error_envelope(self):
        response = ApiResponse.error("Quota exceeded", code=429, error_type="quota")
        assert response.success is False
        assert response.is_error()
        assert response.get_error_message() == "Quota exceeded"
        assert response.get_error_code() == 429
        assert response.get_error()["type"] == "quota"

    def test_empty_envelope_is_still_truthy(self):
        assert bool(ApiResponse.search([])) is True
        assert len(ApiResponse.search([])) == 4


class TestFromRaw:

    def test_json_string_is_decoded(self):
        response = ApiResponse.from_raw('{"asin": "B1"}', "catalogue", ResponseType.PRODUCT)
        assert response.success
        assert response["asin"] == "B1"
        assert response.get_raw_response() == '{"asin": "B1"}'

    def test_non_json_string_becomes_error(self):
        response = ApiResponse.from_raw("Service Unavailable", "catalogue")
        assert response.success is False
        assert response.get_error_message() == "Service Unavailable"

    @pytest.mark.parametrize("payload, message, code", [
        ({"error": {"message": "bad key", "code": 401}}, "bad key", 401),
        ({"errors": [{"Code": "TooManyRequests", "Message": "slow down"}]}, "slow down", "TooManyRequests"),
        ({"error": "nope", "error_code": 7}, "nope", 7),
    ])
    def test_error_payload_shapes(self, payload, message, code):
        response = ApiResponse.from_raw(payload, "catalogue")
        assert response.success is False
        assert response.type == ResponseType.ERROR
        assert response.get_error_message() == message
        assert response.get_error_code() == code

    def test_registered_parser_is_used(self):
        ApiResponse.register_parser("test-parser", lambda raw: {"asin": raw["ASIN"]})
        try:
            response = ApiResponse.from_raw({"ASIN": "B9"}, "test-parser", ResponseType.PRODUCT)
        finally:
            ApiResponse.unregister_parser("test-parser")
        assert response.data == {"asin": "B9"}


class TestTransforms:

    def test_filter_products_updates_total(self):
        response = search_response([5.0, 50.0, 500.0]).filter_products(lambda p: p["price"] < 100)
        assert [p["price"] for p in response.get_products()] == [5.0, 50.0]
        assert response["total_results"] == 2

    def test_sort_is_stable_and_puts_missing_last(self):
        response = ApiResponse.search([
            {"asin": "a", "price": 10},
            {"asin": "b"},
            {"asin": "c", "price": 10},
            {"asin": "d", "price": 1},
        ]).sort_products("price")
        assert [p["asin"] for p in response.get_products()] == ["d", "a", "c", "b"]

    def test_sort_descending(self):
        response = search_response([1.0, 3.0, 2.0]).sort_products("price", "desc")
        assert [p["price"] for p in response.get_products()] == [3.0, 2.0, 1.0]

    def test_sort_strings_with_missing_values(self):
        response = ApiResponse.search([{"title": "b"}, {"price": 1}, {"title": "a"}]).sort_products("title")
        assert [p.get("title") for p in response.get_products()] == ["a", "b", None]

    def test_sort_descending_keeps_missing_last(self):
        response = ApiResponse.search(
            [{"title": "a"}, {"title": None}, {"title": "c"}]
        ).sort_products("title", "desc")
        assert [p["title"] for p in response.get_products()] == ["c", "a", None]

    def test_paginate(self):
        response = search_response([float(i) for i in range(25)]).paginate(3, per_page=10)
        assert len(response.get_products()) == 5
        assert response["total_pages"] == 3
        assert response["total_results"] == 25

    def test_map_products_on_product_envelope(self):
        response = ApiResponse.product({"asin": "B1", "price": 10.0})
        response.map_products(lambda p: {**p, "price": p["price"] * 2})
        assert response["price"] == 20.0

    def test_transforms_ignore_product_envelopes(self):
        response = ApiResponse.product({"asin": "B1"}).paginate(1).filter_products(lambda p: False)
        assert response.data == {"asin": "B1"}

    def test_merge_search_envelopes_sums_costs(self):
        first = ApiResponse.search([{"asin": "B1"}], {"execution_time": 0.5, "credits_used": 1})
        second = ApiResponse.search([{"asin": "B2"}], {"execution_time": 0.25, "credits_used": 2})
        merged = first.merge(second)
        assert [p["asin"] for p in merged.get_products()] == ["B1", "B2"]
        assert merged["total_results"] == 2
        assert merged.get_meta("execution_time") == 0.75
        assert merged.get_meta("credits_used") == 3

    def test_merge_other_envelopes_is_shallow(self):
        merged = ApiResponse.product({"asin": "B1", "title": "old"}).merge(ApiResponse.product({"title": "new"}))
        assert merged.data == {"asin": "B1", "title": "new"}


class TestSerialization:

    def test_to_dict_and_back(self):
        original = ApiResponse.error("boom", code=500)
        restored = ApiResponse.from_dict(json.loads(original.to_json()))
        assert restored.success is False
        assert restored.type == ResponseType.ERROR
        assert restored.get_error_message() == "boom"

    def test_cache_round_trip_marks_cache_hit(self, store, clock):
        cache = ApiCache(store, now=clock.now)
        ApiResponse.product({"asin": "B1"}, {"provider": "catalogue"}).cache(cache, "B1")

        restored = ApiResponse.from_cache(cache, "B1")
        assert restored["asin"] == "B1"
        assert restored.get_meta("cache_hit") is True
        assert restored.get_meta("provider") == "catalogue"
        assert ApiResponse.from_cache(cache, "missing") is None
