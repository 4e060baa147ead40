"""Thread-safe per-provider usage statistics."""

import threading
import time
from typing import Callable, Dict, Optional

from product_gateway.models.data_models import ProviderStats
from product_gateway.monitoring.logger import StructuredLogger
from product_gateway.storage.store import KeyValueStore, StoreError


class StatisticsRepository:
    """Loads and saves the statistics map as a single store entry."""

    KEY = "provider_stats"

    def __init__(self, store: KeyValueStore):
        self.store = store

    def load(self) -> Dict[str, ProviderStats]:
        raw = self.store.get(self.KEY) or {}
        return {key: ProviderStats.from_dict(value) for key, value in raw.items()}

    def save(self, stats: Dict[str, ProviderStats]) -> None:
        self.store.set(self.KEY, {key: value.to_dict() for key, value in stats.items()})


class ProviderStatistics:
    """
    Collects request counters for every provider.

    Updates are applied under a lock and flushed to the repository on every
    ``flush_interval``-th update rather than on each call.
    """

    def __init__(
        self,
        repository: Optional[StatisticsRepository] = None,
        flush_interval: int = 10,
        now: Callable[[], float] = time.time,
        logger: Optional[StructuredLogger] = None,
    ):
        self.repository = repository
        self.flush_interval = flush_interval
        self._now = now
        self.logger = logger
        self._lock = threading.Lock()
        self._stats: Dict[str, ProviderStats] = {}
        self._pending_updates = 0

    def load(self) -> None:
        """Replace in-memory counters with the persisted ones."""
        if self.repository is None:
            return
        try:
            loaded = self.repository.load()
        except StoreError as e:
            if self.logger:
                self.logger.store_error("statistics", str(e))
            return
        with self._lock:
            self._stats = loaded

    def record(self, provider: str, success: bool, response_time: float = 0.0) -> None:
        """
        Record the outcome of one provider invocation.

        Args:
            provider: Provider key
            success: Whether the call produced data
            response_time: Elapsed seconds; only accumulated for successes
        """
        with self._lock:
            stats = self._stats.setdefault(provider, ProviderStats())
            stats.total_requests += 1
            if success:
                stats.successes += 1
                stats.total_response_time += response_time
            else:
                stats.failures += 1
            stats.last_used = self._now()

            self._pending_updates += 1
            should_flush = self._pending_updates >= self.flush_interval
            if should_flush:
                self._pending_updates = 0
                snapshot = {key: ProviderStats(**value.to_dict()) for key, value in self._stats.items()}

        if should_flush:
            self._save(snapshot)

    def flush(self) -> None:
        with self._lock:
            self._pending_updates = 0
            snapshot = {key: ProviderStats(**value.to_dict()) for key, value in self._stats.items()}
        self._save(snapshot)

    def _save(self, snapshot: Dict[str, ProviderStats]) -> None:
        if self.repository is None:
            return
        try:
            self.repository.save(snapshot)
        except StoreError as e:
            if self.logger:
                self.logger.store_error("statistics", str(e))

    def get(self, provider: str) -> ProviderStats:
        with self._lock:
            stats = self._stats.get(provider)
            return ProviderStats(**stats.to_dict()) if stats else ProviderStats()

    def total_requests(self, provider: str) -> int:
        with self._lock:
            stats = self._stats.get(provider)
            return stats.total_requests if stats else 0

    def snapshot(self) -> Dict[str, ProviderStats]:
        with self._lock:
            return {key: ProviderStats(**value.to_dict()) for key, value in self._stats.items()}

    def reset(self) -> None:
        with self._lock:
            self._stats = {}
            self._pending_updates = 0
