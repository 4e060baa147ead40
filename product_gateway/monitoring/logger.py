"""Structured logging for gateway monitoring."""

import json
import logging
from typing import Any, Optional


class StructuredLogger:
    """Structured logger with uniform schema."""

    def __init__(self, name: str = "product_gateway", level: str = "INFO"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        """
        Log structured event.

        Standard keys: event, provider, operation, scope, attempt, status,
                      elapsed_ms, job_id, batch_id, error
        """
        log_data = {"event": event, **kwargs}
        self.logger.log(level, json.dumps(log_data, default=str))

    def request_start(self, provider: str, endpoint: str, attempt: int) -> None:
        self.log("request_start", provider=provider, endpoint=endpoint, attempt=attempt)

    def request_complete(self, provider: str, endpoint: str, status: Optional[int], elapsed_ms: float) -> None:
        self.log("request_complete", provider=provider, endpoint=endpoint, status=status, elapsed_ms=elapsed_ms)

    def request_retry(self, provider: str, endpoint: str, attempt: int, delay: float, error: str) -> None:
        self.log(
            "request_retry", logging.WARNING,
            provider=provider, endpoint=endpoint, attempt=attempt, delay=delay, error=error,
        )

    def rate_limited(self, scope: str, reset_at: Optional[float]) -> None:
        self.log("rate_limited", logging.WARNING, scope=scope, reset_at=reset_at)

    def cache_hit(self, key: str) -> None:
        self.log("cache_hit", logging.DEBUG, key=key)

    def cache_miss(self, key: str) -> None:
        self.log("cache_miss", logging.DEBUG, key=key)

    def store_error(self, component: str, error: str) -> None:
        self.log("store_error", logging.ERROR, component=component, error=error)

    def provider_failure(self, provider: str, operation: str, kind: str, error: str) -> None:
        self.log("provider_failure", logging.WARNING, provider=provider, operation=operation, kind=kind, error=error)

    def provider_fallback(self, from_provider: str, to_provider: str, operation: str) -> None:
        self.log("provider_fallback", from_provider=from_provider, to_provider=to_provider, operation=operation)

    def provider_exhausted(self, operation: str, tried: list) -> None:
        self.log("provider_exhausted", logging.ERROR, operation=operation, tried=tried)

    def job_completed(self, job_id: int, action: str, elapsed_ms: float) -> None:
        self.log("job_completed", job_id=job_id, action=action, elapsed_ms=elapsed_ms)

    def job_retry(self, job_id: int, attempt: int, scheduled_at: float, error: str) -> None:
        self.log("job_retry", logging.WARNING, job_id=job_id, attempt=attempt, scheduled_at=scheduled_at, error=error)

    def job_failed(self, job_id: int, attempts: int, error: str) -> None:
        self.log("job_failed", logging.ERROR, job_id=job_id, attempts=attempts, error=error)

    def queue_pass(self, processed: int, succeeded: int, failed: int, stopped_early: bool) -> None:
        self.log("queue_pass", processed=processed, succeeded=succeeded, failed=failed, stopped_early=stopped_early)
