"""Unit tests for HTTP client wrapper."""

import pytest
import httpx

from product_gateway.fetcher.http_client import AsyncHTTPClient


class TestAsyncHTTPClient:

    @pytest.mark.asyncio
    async def test_initialization_with_defaults(self):
        async with AsyncHTTPClient() as client:
            assert client.timeout == 30.0
            assert client.connect_timeout == 5.0

    @pytest.mark.asyncio
    async def test_timeout_configuration_applied(self):
        async with AsyncHTTPClient(timeout=10.0, connect_timeout=2.0) as client:
            timeout = client._client.timeout
            assert timeout.connect == 2.0
            assert timeout.read == 10.0

    @pytest.mark.asyncio
    async def test_context_manager_lifecycle(self):
        client = AsyncHTTPClient()

        async with client:
            assert client._client is not None

        # Client should be closed after context exit
        assert client._client is None

    @pytest.mark.asyncio
    async def test_client_is_created_lazily(self):
        client = AsyncHTTPClient(transport=httpx.MockTransport(lambda r: httpx.Response(204)))
        assert client._client is None

        response = await client.get("http://test.com/ping")
        assert response.status_code == 204
        await client.aclose()

    @pytest.mark.asyncio
    async def test_get_request_with_params_and_headers(self):
        def handler(request):
            assert request.url.params["page"] == "1"
            assert request.headers["X-API-Key"] == "k"
            return httpx.Response(200, json={"page": 1})

        async with AsyncHTTPClient(transport=httpx.MockTransport(handler), headers={"X-API-Key": "k"}) as client:
            response = await client.get("http://test.com/api", params={"page": 1})

        assert response.json() == {"page": 1}

    @pytest.mark.asyncio
    async def test_post_sends_body_verbatim(self):
        seen = {}

        def handler(request):
            seen["body"] = request.content
            seen["target"] = request.headers["x-amz-target"]
            return httpx.Response(200, json={})

        async with AsyncHTTPClient(transport=httpx.MockTransport(handler)) as client:
            await client.post("http://test.com/api", content='{"b": 1,  "a": 2}', headers={"x-amz-target": "T"})

        assert seen == {"body": b'{"b": 1,  "a": 2}', "target": "T"}
