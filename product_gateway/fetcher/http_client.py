"""Async HTTP client wrapper with timeout configuration."""

from typing import Any, Dict, Optional

import httpx


class AsyncHTTPClient:
    """
    Async HTTP client wrapper around httpx.AsyncClient.

    Provides:
    - A bounded per-request timeout (default 30s) with a separate connect timeout
    - Connection pooling via httpx
    - Context manager for proper lifecycle management
    - An injectable transport so tests can use httpx.MockTransport/ASGITransport
    """

    def __init__(
        self,
        timeout: float = 30.0,
        connect_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize HTTP client.

        Args:
            timeout: Read/write/pool timeout in seconds
            connect_timeout: Connection timeout in seconds
            transport: Optional httpx transport override
            headers: Default headers sent with every request
        """
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.transport = transport
        self.headers = headers or {}
        self._client: Optional[httpx.AsyncClient] = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
                transport=self.transport,
                headers=self.headers,
            )
        return self._client

    async def __aenter__(self):
        """Enter async context manager."""
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager."""
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> httpx.Response:
        """
        Perform GET request.

        Args:
            url: URL to request
            params: Query parameters
            **kwargs: Additional arguments for httpx

        Returns:
            HTTP response
        """
        return await self._ensure_client().get(url, params=params, **kwargs)

    async def post(
        self,
        url: str,
        content: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs
    ) -> httpx.Response:
        """
        Perform POST request with a pre-serialized body.

        The body is sent verbatim so that signed requests hash exactly the
        bytes that go over the wire.

        Args:
            url: URL to request
            content: Request body
            headers: Request headers
            **kwargs: Additional arguments for httpx

        Returns:
            HTTP response
        """
        return await self._ensure_client().post(url, content=content, headers=headers, **kwargs)
