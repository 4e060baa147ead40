"""Key/value stores backing the cache, rate limits, statistics and queue flags.

Values are JSON-serialized in every backend so that an in-process store and
a shared Redis instance hold byte-identical payloads. Set members (used for
the cache tag index) are plain strings.
"""

import json
import math
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from redis import Redis
from redis.exceptions import RedisError


_COMPARE_AND_SET = """
if redis.call('GET', KEYS[1]) ~= ARGV[1] then
    return 0
end
if tonumber(ARGV[3]) > 0 then
    redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
else
    redis.call('SET', KEYS[1], ARGV[2])
end
return 1
"""

_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# ARGV[1] is the TTL in seconds (0 for none), the rest are members
_SADD_EXTEND = """
local existed = redis.call('EXISTS', KEYS[1])
local added = redis.call('SADD', KEYS[1], unpack(ARGV, 2))
local ttl = tonumber(ARGV[1])
if ttl > 0 then
    local remaining = redis.call('TTL', KEYS[1])
    if existed == 0 or (remaining >= 0 and remaining < ttl) then
        redis.call('EXPIRE', KEYS[1], ttl)
    end
end
return added
"""


class StoreError(Exception):
    """Raised when the backing store cannot complete an operation."""


class KeyValueStore(Protocol):
    """Interface required from the persistent key/value store."""

    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        ...

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Set ``key`` only if it does not exist (atomic compare-and-set)."""
        ...

    def delete(self, key: str) -> bool:
        ...

    def incr(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Atomically increment; ``ttl`` applies only when the key is created."""
        ...

    def compare_and_set(self, key: str, expected: Any, value: Any, ttl: Optional[float] = None) -> bool:
        """Replace ``key`` only while it still holds ``expected``."""
        ...

    def compare_and_delete(self, key: str, expected: Any) -> bool:
        """Delete ``key`` only while it still holds ``expected``."""
        ...

    def sadd(self, key: str, members: Iterable[str], ttl: Optional[float] = None) -> int:
        """Add members to a set; ``ttl`` extends the set's expiry, never shortens it."""
        ...

    def srem(self, key: str, members: Iterable[str]) -> int:
        ...

    def smembers(self, key: str) -> List[str]:
        ...

    def ttl(self, key: str) -> Optional[float]:
        ...

    def keys(self, prefix: str = "") -> List[str]:
        ...

    def delete_prefix(self, prefix: str) -> int:
        ...

    def ping(self) -> bool:
        ...


class MemoryStore:
    """Thread-safe in-process store with per-key expiry.

    Suitable for a single process and for tests; use ``RedisStore`` when
    several workers share rate limits and the queue processing flag.
    """

    def __init__(self, now: Callable[[], float] = time.time):
        self._now = now
        # {key: (serialized_value, expires_at or None)}
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and self._now() >= expires_at:
            del self._data[key]
            return None
        return item

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        if ttl is None or ttl <= 0:
            return None
        return self._now() + ttl

    def get(self, key: str) -> Any:
        with self._lock:
            item = self._live(key)
            return json.loads(item[0]) if item is not None else None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        serialized = json.dumps(value)
        with self._lock:
            self._data[key] = (serialized, self._expiry(ttl))
        return True

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        serialized = json.dumps(value)
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (serialized, self._expiry(ttl))
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            existed = self._live(key) is not None
            self._data.pop(key, None)
            return existed

    def incr(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        with self._lock:
            item = self._live(key)
            if item is None:
                value = amount
                expires_at = self._expiry(ttl)
            else:
                value = int(json.loads(item[0])) + amount
                expires_at = item[1]
            self._data[key] = (json.dumps(value), expires_at)
            return value

    def compare_and_set(self, key: str, expected: Any, value: Any, ttl: Optional[float] = None) -> bool:
        serialized = json.dumps(value)
        with self._lock:
            item = self._live(key)
            if item is None or item[0] != json.dumps(expected):
                return False
            self._data[key] = (serialized, self._expiry(ttl))
            return True

    def compare_and_delete(self, key: str, expected: Any) -> bool:
        with self._lock:
            item = self._live(key)
            if item is None or item[0] != json.dumps(expected):
                return False
            del self._data[key]
            return True

    def sadd(self, key: str, members: Iterable[str], ttl: Optional[float] = None) -> int:
        members = set(members)
        if not members:
            return 0
        with self._lock:
            item = self._live(key)
            current = set(json.loads(item[0])) if item is not None else set()
            added = members - current
            expires_at = item[1] if item is not None else None
            new_expiry = self._expiry(ttl)
            if item is None:
                expires_at = new_expiry
            elif expires_at is not None and new_expiry is not None and new_expiry > expires_at:
                expires_at = new_expiry
            self._data[key] = (json.dumps(sorted(current | added)), expires_at)
            return len(added)

    def srem(self, key: str, members: Iterable[str]) -> int:
        with self._lock:
            item = self._live(key)
            if item is None:
                return 0
            current = set(json.loads(item[0]))
            removed = current & set(members)
            remaining = current - removed
            if remaining:
                self._data[key] = (json.dumps(sorted(remaining)), item[1])
            else:
                del self._data[key]
            return len(removed)

    def smembers(self, key: str) -> List[str]:
        with self._lock:
            item = self._live(key)
            return json.loads(item[0]) if item is not None else []

    def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            item = self._live(key)
            if item is None or item[1] is None:
                return None
            return max(0.0, item[1] - self._now())

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [key for key in list(self._data) if key.startswith(prefix) and self._live(key) is not None]

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._data if key.startswith(prefix)]
            for key in doomed:
                del self._data[key]
            return len(doomed)

    def ping(self) -> bool:
        return True


class RedisStore:
    """Store backed by Redis, shared across worker processes."""

    def __init__(self, client: Redis, namespace: str = ""):
        self.client = client
        self.namespace = namespace
        self._compare_and_set = client.register_script(_COMPARE_AND_SET)
        self._compare_and_delete = client.register_script(_COMPARE_AND_DELETE)
        self._sadd_extend = client.register_script(_SADD_EXTEND)

    @classmethod
    def from_url(cls, url: str, namespace: str = "") -> "RedisStore":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client, namespace)

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    @staticmethod
    def _seconds(ttl: Optional[float]) -> Optional[int]:
        if ttl is None or ttl <= 0:
            return None
        return max(1, math.ceil(ttl))

    def get(self, key: str) -> Any:
        try:
            raw = self.client.get(self._key(key))
        except RedisError as e:
            raise StoreError(f"Redis get failed: {e}") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise StoreError(f"Corrupt value for key {key}: {e}") from e

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        try:
            return bool(self.client.set(self._key(key), json.dumps(value), ex=self._seconds(ttl)))
        except RedisError as e:
            raise StoreError(f"Redis set failed: {e}") from e

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        try:
            return bool(self.client.set(self._key(key), json.dumps(value), ex=self._seconds(ttl), nx=True))
        except RedisError as e:
            raise StoreError(f"Redis add failed: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            return self.client.delete(self._key(key)) > 0
        except RedisError as e:
            raise StoreError(f"Redis delete failed: {e}") from e

    def incr(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        full_key = self._key(key)
        seconds = self._seconds(ttl)
        try:
            # MULTI/EXEC: the key never exists without its expiry
            pipe = self.client.pipeline()
            if seconds is not None:
                pipe.set(full_key, 0, ex=seconds, nx=True)
            pipe.incrby(full_key, amount)
            return int(pipe.execute()[-1])
        except RedisError as e:
            raise StoreError(f"Redis incr failed: {e}") from e

    def compare_and_set(self, key: str, expected: Any, value: Any, ttl: Optional[float] = None) -> bool:
        try:
            swapped = self._compare_and_set(
                keys=[self._key(key)],
                args=[json.dumps(expected), json.dumps(value), self._seconds(ttl) or 0],
            )
        except RedisError as e:
            raise StoreError(f"Redis compare-and-set failed: {e}") from e
        return bool(swapped)

    def compare_and_delete(self, key: str, expected: Any) -> bool:
        try:
            deleted = self._compare_and_delete(keys=[self._key(key)], args=[json.dumps(expected)])
        except RedisError as e:
            raise StoreError(f"Redis compare-and-delete failed: {e}") from e
        return bool(deleted)

    def sadd(self, key: str, members: Iterable[str], ttl: Optional[float] = None) -> int:
        members = sorted(set(members))
        if not members:
            return 0
        try:
            return int(self._sadd_extend(keys=[self._key(key)], args=[self._seconds(ttl) or 0, *members]))
        except RedisError as e:
            raise StoreError(f"Redis sadd failed: {e}") from e

    def srem(self, key: str, members: Iterable[str]) -> int:
        members = sorted(set(members))
        if not members:
            return 0
        try:
            return int(self.client.srem(self._key(key), *members))
        except RedisError as e:
            raise StoreError(f"Redis srem failed: {e}") from e

    def smembers(self, key: str) -> List[str]:
        try:
            return sorted(self.client.smembers(self._key(key)))
        except RedisError as e:
            raise StoreError(f"Redis smembers failed: {e}") from e

    def ttl(self, key: str) -> Optional[float]:
        try:
            remaining = self.client.ttl(self._key(key))
        except RedisError as e:
            raise StoreError(f"Redis ttl failed: {e}") from e
        if remaining is None or remaining < 0:
            return None
        return float(remaining)

    def keys(self, prefix: str = "") -> List[str]:
        try:
            return [
                key[len(self.namespace):]
                for key in self.client.scan_iter(match=f"{self._key(prefix)}*")
            ]
        except RedisError as e:
            raise StoreError(f"Redis scan failed: {e}") from e

    def delete_prefix(self, prefix: str) -> int:
        try:
            full_keys = list(self.client.scan_iter(match=f"{self._key(prefix)}*"))
            if not full_keys:
                return 0
            return int(self.client.delete(*full_keys))
        except RedisError as e:
            raise StoreError(f"Redis delete failed: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError:
            return False
