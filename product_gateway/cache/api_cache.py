"""Two-tier response cache with per-type TTLs and tag invalidation."""

import json
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from product_gateway.cache.keys import generate_key
from product_gateway.models.config import CacheConfig
from product_gateway.models.data_models import CacheEntry
from product_gateway.monitoring.logger import StructuredLogger
from product_gateway.storage.store import KeyValueStore, StoreError


ENTRY_PREFIX = "cache:"
STATS_KEY = "cache_stats"

# {id(ApiCache): memory tier} for the request running in this context
_request_tiers: ContextVar[Optional[Dict[int, "OrderedDict[str, CacheEntry]"]]] = ContextVar(
    "api_cache_request_tiers", default=None
)


class TagRegistry:
    """
    Tag -> keys index kept in the store as one set per tag.

    Every change is a single atomic set operation on the store, so workers
    sharing a store never overwrite each other's tags.
    """

    PREFIX = "cache_tag:"

    def __init__(self, store: KeyValueStore):
        self.store = store

    def _key(self, tag: str) -> str:
        return self.PREFIX + tag

    def load(self) -> Dict[str, List[str]]:
        """Snapshot of every tag and its keys."""
        return {
            name[len(self.PREFIX):]: self.store.smembers(name)
            for name in sorted(self.store.keys(self.PREFIX))
        }

    def save(self, tags: Dict[str, Iterable[str]], ttl: Optional[float] = None) -> None:
        """Merge ``tags`` into the index; existing members are kept."""
        for tag, keys in tags.items():
            self.store.sadd(self._key(tag), keys, ttl=ttl)

    def add(self, key: str, tags: Iterable[str], ttl: Optional[float] = None) -> None:
        self.save({tag: [key] for tag in tags}, ttl=ttl)

    def remove_key(self, key: str, tags: Iterable[str]) -> None:
        for tag in tags:
            self.store.srem(self._key(tag), [key])

    def keys_for(self, tag: str) -> List[str]:
        return sorted(self.store.smembers(self._key(tag)))

    def discard(self, tag: str, keys: Iterable[str]) -> None:
        self.store.srem(self._key(tag), keys)

    def clear(self) -> None:
        self.store.delete_prefix(self.PREFIX)


class ApiCache:
    """
    Response cache with a per-request memory tier over a ``KeyValueStore``.

    Reads check the memory tier of the current request scope, then the
    store; store hits are validated against their expiry and promoted.
    Outside ``request_scope`` every read goes to the store. Backend errors
    are logged and treated as misses so the cache never fails a caller.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: Optional[CacheConfig] = None,
        now: Callable[[], float] = time.time,
        logger: Optional[StructuredLogger] = None,
    ):
        self.store = store
        self.config = config or CacheConfig()
        self.enabled = self.config.enabled
        self.default_ttl = self.config.default_ttl
        self.ttl_config: Dict[str, int] = dict(self.config.ttl)
        self.memory_max_entries = self.config.memory_max_entries
        self._now = now
        self.logger = logger

        self._lock = threading.RLock()
        self._stats = {"hits": 0, "misses": 0, "writes": 0, "deletes": 0}
        self.tags = TagRegistry(store)

    def _store_error(self, error: Exception) -> None:
        if self.logger:
            self.logger.store_error("cache", str(error))

    def _bump(self, name: str) -> None:
        with self._lock:
            self._stats[name] += 1

    # -- request-scoped memory tier ------------------------------------------

    @contextmanager
    def request_scope(self) -> Iterator[None]:
        """Give the calling request its own memory tier, dropped on exit."""
        tiers = dict(_request_tiers.get() or {})
        tiers[id(self)] = OrderedDict()
        token = _request_tiers.set(tiers)
        try:
            yield
        finally:
            _request_tiers.reset(token)

    def _tier(self) -> Optional["OrderedDict[str, CacheEntry]"]:
        tiers = _request_tiers.get()
        return tiers.get(id(self)) if tiers else None

    def _remember(self, entry: CacheEntry) -> None:
        tier = self._tier()
        if tier is None:
            return
        with self._lock:
            tier[entry.key] = entry
            tier.move_to_end(entry.key)
            while len(tier) > self.memory_max_entries:
                tier.popitem(last=False)

    def _forget(self, key: str) -> bool:
        tier = self._tier()
        if tier is None:
            return False
        with self._lock:
            return tier.pop(key, None) is not None

    # -- key and TTL helpers -------------------------------------------------

    @staticmethod
    def generate_key(cache_type: str, params: Dict[str, Any], provider: Optional[str] = None) -> str:
        return generate_key(cache_type, params, provider)

    def ttl_for_key(self, key: str) -> int:
        for cache_type, ttl in self.ttl_config.items():
            if key.startswith(cache_type):
                return ttl
        return self.default_ttl

    def detect_type(self, key: str) -> str:
        for cache_type in self.ttl_config:
            if key.startswith(cache_type):
                return cache_type
        return "general"

    # -- raw entry access ----------------------------------------------------

    def _read_entry(self, key: str) -> Optional[CacheEntry]:
        """Fetch a still-valid entry from either tier, evicting expired ones."""
        now = self._now()
        tier = self._tier()
        if tier is not None:
            with self._lock:
                entry = tier.get(key)
                if entry is not None:
                    if entry.is_valid(now):
                        return entry
                    del tier[key]

        try:
            raw = self.store.get(ENTRY_PREFIX + key)
        except StoreError as e:
            self._store_error(e)
            return None
        if raw is None:
            return None

        try:
            entry = CacheEntry.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            entry = None
        if entry is None or not entry.is_valid(now):
            self._delete_backend(key)
            return None

        self._remember(entry)
        return entry

    def _delete_backend(self, key: str) -> bool:
        try:
            return self.store.delete(ENTRY_PREFIX + key)
        except StoreError as e:
            self._store_error(e)
            return False

    # -- public API ----------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """
        Return the cached data for ``key`` or ``default`` on a miss.

        Args:
            key: Cache key
            default: Value returned when nothing valid is cached

        Returns:
            Cached data or default
        """
        if not self.enabled:
            return default

        entry = self._read_entry(key)
        if entry is None:
            self._bump("misses")
            if self.logger:
                self.logger.cache_miss(key)
            return default

        self._bump("hits")
        if self.logger:
            self.logger.cache_hit(key)
        return entry.data

    def set(
        self,
        key: str,
        data: Any,
        ttl: Optional[int] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Store ``data`` under ``key``.

        Args:
            key: Cache key
            data: JSON-serializable value
            ttl: Lifetime in seconds; derived from the key's type when omitted
            tags: Tags for group invalidation
            metadata: Extra metadata kept with the entry

        Returns:
            True if the entry was written to the durable store
        """
        if not self.enabled:
            return False

        if ttl is None:
            ttl = self.ttl_for_key(key)
        now = self._now()
        entry = CacheEntry(
            key=key,
            data=data,
            created=now,
            expires=now + ttl,
            ttl=int(ttl),
            tags=list(tags or []),
            metadata={
                "size": len(json.dumps(data, default=str)),
                "type": self.detect_type(key),
                **(metadata or {}),
            },
        )
        self._remember(entry)

        try:
            self.store.set(ENTRY_PREFIX + key, entry.to_dict(), ttl=ttl)
            if entry.tags:
                self.tags.add(key, entry.tags, ttl=ttl)
        except StoreError as e:
            self._store_error(e)
            return False

        self._bump("writes")
        return True

    def delete(self, key: str) -> bool:
        if not self.enabled:
            return False

        in_memory = self._forget(key)
        try:
            raw = self.store.get(ENTRY_PREFIX + key)
            in_backend = self.store.delete(ENTRY_PREFIX + key)
            if isinstance(raw, dict) and raw.get("tags"):
                self.tags.remove_key(key, raw["tags"])
        except StoreError as e:
            self._store_error(e)
            in_backend = False

        if in_memory or in_backend:
            self._bump("deletes")
            return True
        return False

    def delete_by_tag(self, tag: str) -> int:
        """Delete every entry carrying ``tag``; returns the number removed."""
        if not self.enabled:
            return 0

        try:
            keys = self.tags.keys_for(tag)
        except StoreError as e:
            self._store_error(e)
            return 0

        deleted = 0
        for key in keys:
            if self.delete(key):
                deleted += 1
        try:
            self.tags.discard(tag, keys)
        except StoreError as e:
            self._store_error(e)
        return deleted

    def clear_all(self) -> bool:
        """Wipe the store entries, the tag index, the statistics and this request's tier."""
        tier = self._tier()
        with self._lock:
            if tier is not None:
                tier.clear()
            self._stats = {"hits": 0, "misses": 0, "writes": 0, "deletes": 0}
        try:
            self.store.delete_prefix(ENTRY_PREFIX)
            self.tags.clear()
            self.store.delete(STATS_KEY)
        except StoreError as e:
            self._store_error(e)
            return False
        return True

    def exists(self, key: str) -> bool:
        if not self.enabled:
            return False
        return self._read_entry(key) is not None

    def get_ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime of ``key`` in whole seconds, or None if absent."""
        entry = self._read_entry(key) if self.enabled else None
        if entry is None:
            return None
        return max(0, int(entry.expires - self._now()))

    def touch(self, key: str, extra_ttl: Optional[int] = None) -> bool:
        """Extend an entry's expiry, by ``extra_ttl`` or its original TTL."""
        if not self.enabled:
            return False
        entry = self._read_entry(key)
        if entry is None:
            return False
        ttl = extra_ttl if extra_ttl is not None else entry.ttl
        return self.set(key, entry.data, ttl, entry.tags, entry.metadata)

    def warm(self, entries: List[Dict[str, Any]]) -> int:
        """Pre-populate the cache; entries lacking ``key`` or ``data`` are skipped."""
        warmed = 0
        for item in entries:
            if "key" not in item or "data" not in item:
                continue
            if self.set(item["key"], item["data"], item.get("ttl"), item.get("tags"), item.get("metadata")):
                warmed += 1
        return warmed

    # -- statistics ----------------------------------------------------------

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
        total = stats["hits"] + stats["misses"]
        return {
            **stats,
            "hit_rate": round(stats["hits"] / total * 100, 2) if total > 0 else 0,
            "total_requests": total,
            "backend": type(self.store).__name__,
            "enabled": self.enabled,
        }

    def save_statistics(self) -> None:
        with self._lock:
            stats = dict(self._stats)
        try:
            self.store.set(STATS_KEY, stats)
        except StoreError as e:
            self._store_error(e)

    def load_statistics(self) -> None:
        try:
            saved = self.store.get(STATS_KEY) or {}
        except StoreError as e:
            self._store_error(e)
            return
        with self._lock:
            for name in self._stats:
                self._stats[name] = int(saved.get(name, 0))

    def reset_statistics(self) -> None:
        with self._lock:
            self._stats = {"hits": 0, "misses": 0, "writes": 0, "deletes": 0}
