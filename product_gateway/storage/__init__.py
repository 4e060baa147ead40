"""Persistent stores: key/value store and durable job table."""

from .job_repository import JobRepository, MemoryJobRepository, SqlJobRepository
from .store import KeyValueStore, MemoryStore, RedisStore, StoreError


def build_store(storage_config) -> KeyValueStore:
    """Create the key/value store selected by ``StorageConfig``."""
    if storage_config.backend == "redis":
        return RedisStore.from_url(storage_config.redis_url, namespace=storage_config.namespace)
    return MemoryStore()


def build_job_repository(storage_config) -> JobRepository:
    """Create the job table; SQL when ``database_url`` is set, in-process otherwise."""
    if storage_config.database_url:
        return SqlJobRepository(storage_config.database_url)
    return MemoryJobRepository()


__all__ = [
    "JobRepository",
    "KeyValueStore",
    "MemoryJobRepository",
    "MemoryStore",
    "RedisStore",
    "SqlJobRepository",
    "StoreError",
    "build_job_repository",
    "build_store",
]
