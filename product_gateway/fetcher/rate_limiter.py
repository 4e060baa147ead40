"""Rate limiter implementation using fixed windows per scope."""

import time
from typing import Callable, Dict, Optional, Tuple

from product_gateway.models.config import RateLimitConfig, RateLimitRule
from product_gateway.models.data_models import RateLimitWindow
from product_gateway.monitoring.logger import StructuredLogger
from product_gateway.storage.store import KeyValueStore, StoreError


class RateLimiter:
    """Fixed-window rate limiter keyed by scope (usually ``provider:operation``).

    Each window is one counter in the shared store, created by the first
    recorded request with the window length as its TTL. When the TTL lapses
    the counter disappears and the scope is permitted again.
    """

    KEY_PREFIX = "rate:"

    def __init__(
        self,
        store: KeyValueStore,
        config: Optional[RateLimitConfig] = None,
        now: Callable[[], float] = time.time,
        logger: Optional[StructuredLogger] = None,
    ):
        """Initialize rate limiter.

        Args:
            store: Shared store holding the window counters
            config: Default limits and per-scope rules
            now: Clock function (default: time.time)
            logger: Optional structured logger
        """
        self.store = store
        self.config = config or RateLimitConfig()
        self._now = now
        self.logger = logger
        self._rules: Dict[str, RateLimitRule] = dict(self.config.scopes)

    def configure_scope(self, scope: str, requests: int, window: int) -> None:
        """Register or replace the limit for a scope or operation name."""
        self._rules[scope] = RateLimitRule(requests=requests, window=window)

    def limits_for(self, scope: str) -> Tuple[int, int]:
        """Resolve ``(limit, window_seconds)``: exact scope, then operation suffix, then default."""
        rule = self._rules.get(scope)
        if rule is None and ":" in scope:
            rule = self._rules.get(scope.rsplit(":", 1)[1])
        if rule is None:
            return self.config.default_requests, self.config.default_window
        return rule.requests, rule.window

    def _key(self, scope: str) -> str:
        return f"{self.KEY_PREFIX}{scope}"

    def _store_error(self, error: Exception) -> None:
        if self.logger:
            self.logger.store_error("rate_limiter", str(error))

    def get_window(self, scope: str) -> Optional[RateLimitWindow]:
        """Return the active window for ``scope``, or None if none is open."""
        limit, window_seconds = self.limits_for(scope)
        try:
            count = self.store.get(self._key(scope))
            remaining = self.store.ttl(self._key(scope))
        except StoreError as e:
            self._store_error(e)
            return None
        if count is None:
            return None

        now = self._now()
        resets_at = now + remaining if remaining is not None else now + window_seconds
        return RateLimitWindow(
            scope=scope,
            count=int(count),
            window_seconds=window_seconds,
            limit=limit,
            started_at=resets_at - window_seconds,
        )

    def can_make_request(self, scope: str) -> bool:
        """True if the current window for ``scope`` still has room."""
        window = self.get_window(scope)
        if window is None:
            return True
        allowed = window.allows_request()
        if not allowed and self.logger:
            self.logger.rate_limited(scope, window.resets_at)
        return allowed

    def record_request(self, scope: str) -> int:
        """Count one request against ``scope``, opening a window if needed.

        Returns:
            The window's count after this request (0 if the store failed)
        """
        _, window_seconds = self.limits_for(scope)
        try:
            return self.store.incr(self._key(scope), 1, ttl=window_seconds)
        except StoreError as e:
            self._store_error(e)
            return 0

    def remaining(self, scope: str) -> int:
        limit, _ = self.limits_for(scope)
        window = self.get_window(scope)
        if window is None:
            return limit
        return max(0, limit - window.count)

    def reset_time(self, scope: str) -> Optional[float]:
        """Epoch seconds at which the current window ends, or None if open."""
        window = self.get_window(scope)
        return window.resets_at if window is not None else None

    def reset(self, scope: str) -> None:
        try:
            self.store.delete(self._key(scope))
        except StoreError as e:
            self._store_error(e)
