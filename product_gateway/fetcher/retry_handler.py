"""Request execution with rate-limit pre-check, retries and exponential backoff."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import httpx

from product_gateway.fetcher.rate_limiter import RateLimiter
from product_gateway.models.config import RetryConfig
from product_gateway.models.data_models import ErrorKind, ProviderResult
from product_gateway.monitoring.logger import StructuredLogger
from product_gateway.monitoring.request_log import RequestLog
from product_gateway.providers.errors import ProviderError, QuotaExceededError, TransientError


def calculate_backoff_delay(attempt: int, max_delay: float = 30.0) -> float:
    """
    Calculate the wait before the next attempt.

    Formula: min(2 ** (attempt - 1), max_delay)

    Args:
        attempt: Attempt number that just failed (1-indexed)
        max_delay: Maximum delay cap in seconds

    Returns:
        Delay in seconds
    """
    return min(float(2 ** (attempt - 1)), max_delay)


class RequestExecutor:
    """
    Runs one upstream operation on behalf of a provider.

    Shared by every provider through composition. Before the first attempt
    the scope's rate window is checked; a blocked scope fails immediately
    with a quota failure and consumes no attempt. Afterwards the call is
    attempted up to ``max_retries`` times, retrying only network errors and
    retryable HTTP statuses (500, 502, 503, 504 by default). Upstream
    throttling (429) is a quota failure and goes to fallback instead.

    Every outcome is returned as a ``ProviderResult``; exceptions never
    escape.
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        config: Optional[RetryConfig] = None,
        request_log: Optional[RequestLog] = None,
        logger: Optional[StructuredLogger] = None,
        sleeper: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ):
        """
        Initialize request executor.

        Args:
            rate_limiter: Limiter consulted before the first attempt
            config: Retry policy
            request_log: Optional request log receiving one entry per attempt
            logger: Optional structured logger
            sleeper: Async sleep used for backoff (injectable for tests)
            clock: Monotonic clock used to measure elapsed time
        """
        self.rate_limiter = rate_limiter
        self.config = config or RetryConfig()
        self.max_retries = self.config.max_retries
        self.retryable_status_codes: Set[int] = set(self.config.retryable_status_codes)
        self.request_log = request_log
        self.logger = logger
        self._sleep = sleeper
        self._clock = clock

    def is_retryable(self, error: Exception) -> bool:
        """
        Check if error is retryable.

        Args:
            error: Exception raised by the attempt

        Returns:
            True for network errors and retryable HTTP statuses
        """
        if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
            return True
        if isinstance(error, TransientError):
            return error.status_code is None or error.status_code in self.retryable_status_codes
        return False

    def _classify(self, error: Exception, attempts: int, execution_time: float) -> ProviderResult:
        if isinstance(error, ProviderError):
            return ProviderResult.fail(
                error.kind,
                error.message,
                code=error.code,
                details=error.details,
                reset_at=getattr(error, "reset_at", None),
                attempts=attempts,
                execution_time=execution_time,
            )
        if isinstance(error, httpx.TimeoutException):
            kind, message = ErrorKind.TRANSIENT, f"Request timed out: {error}"
        elif isinstance(error, httpx.TransportError):
            kind, message = ErrorKind.TRANSIENT, f"Network error: {error}"
        elif isinstance(error, ValueError):
            kind, message = ErrorKind.MALFORMED, f"Unparsable response: {error}"
        else:
            kind, message = ErrorKind.UNKNOWN, str(error) or type(error).__name__
        return ProviderResult.fail(kind, message, attempts=attempts, execution_time=execution_time)

    async def execute(
        self,
        provider: str,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        endpoint: Optional[str] = None,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        credits: int = 1,
    ) -> ProviderResult:
        """
        Execute ``call`` with rate limiting, retries and request logging.

        Args:
            provider: Provider key
            operation: Operation name; the rate scope is ``provider:operation``
            call: Zero-argument coroutine function performing one attempt
            endpoint: Endpoint recorded in the request log (defaults to operation)
            method: HTTP method recorded in the request log
            params: Request parameters recorded in the request log
            credits: Credits consumed by a successful attempt

        Returns:
            ProviderResult with the call's return value or a classified failure
        """
        scope = f"{provider}:{operation}"
        endpoint = endpoint or operation

        if self.rate_limiter is not None and not await asyncio.to_thread(self.rate_limiter.can_make_request, scope):
            return ProviderResult.fail(
                ErrorKind.QUOTA,
                f"Rate limit exceeded for {scope}",
                code=429,
                reset_at=self.rate_limiter.reset_time(scope),
                attempts=0,
            )

        started = self._clock()
        attempt = 0
        last_error: Optional[Exception] = None

        while attempt < self.max_retries:
            attempt += 1
            if self.rate_limiter is not None:
                await asyncio.to_thread(self.rate_limiter.record_request, scope)

            entry = self.request_log.start(provider, endpoint, method, params) if self.request_log is not None else None
            if self.logger:
                self.logger.request_start(provider, endpoint, attempt)
            attempt_started = self._clock()

            try:
                value = await call()
            except Exception as e:
                elapsed = self._clock() - attempt_started
                last_error = e
                if self.request_log is not None:
                    self.request_log.complete(
                        entry,
                        getattr(e, "code", None) or 500,
                        str(e) or type(e).__name__,
                        0,
                        elapsed,
                    )

                if attempt >= self.max_retries or not self.is_retryable(e):
                    break

                delay = calculate_backoff_delay(attempt, self.config.backoff_cap)
                if self.logger:
                    self.logger.request_retry(provider, endpoint, attempt, delay, str(e))
                await self._sleep(delay)
                continue

            elapsed = self._clock() - attempt_started
            if self.request_log is not None:
                self.request_log.complete(entry, 200, "Success", credits, elapsed)
            if self.logger:
                self.logger.request_complete(provider, endpoint, 200, round(elapsed * 1000, 2))
            return ProviderResult.success(
                value,
                attempts=attempt,
                credits_used=credits,
                execution_time=self._clock() - started,
            )

        result = self._classify(last_error, attempt, self._clock() - started)
        if isinstance(last_error, QuotaExceededError) and result.failure.reset_at is None and self.rate_limiter is not None:
            result.failure.reset_at = self.rate_limiter.reset_time(scope)
        return result
