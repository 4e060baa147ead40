"""Upstream request plumbing: HTTP client, rate limiting and retries."""

from .http_client import AsyncHTTPClient
from .rate_limiter import RateLimiter
from .retry_handler import RequestExecutor, calculate_backoff_delay

__all__ = ["AsyncHTTPClient", "RateLimiter", "RequestExecutor", "calculate_backoff_delay"]
