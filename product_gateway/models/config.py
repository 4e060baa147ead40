"""Configuration management for the product gateway."""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from product_gateway.models.data_models import LoadBalancing, Operation


DEFAULT_CACHE_TTLS: Dict[str, int] = {
    "product": 3600,        # 1 hour
    "search": 1800,         # 30 minutes
    "variations": 7200,     # 2 hours
    "categories": 86400,    # 24 hours
    "bestsellers": 3600,
    "offers": 900,          # 15 minutes
    "reviews": 21600,       # 6 hours
}


class CacheConfig(BaseModel):
    """Response cache settings."""
    enabled: bool = Field(default=True, description="Enable response caching")
    default_ttl: int = Field(default=3600, description="TTL used when no type rule matches")
    ttl: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_CACHE_TTLS),
        description="TTL in seconds per cache type (matched by key prefix)",
    )
    memory_max_entries: int = Field(default=500, description="Entries kept in the per-request memory tier")

    @field_validator("default_ttl", "memory_max_entries")
    @classmethod
    def validate_default_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"value must be positive, got: {v}")
        return v


class RateLimitRule(BaseModel):
    """Request budget for one scope."""
    requests: int = Field(description="Requests allowed per window")
    window: int = Field(description="Window length in seconds")

    @field_validator("requests", "window")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"rate limit values must be positive, got: {v}")
        return v


class RateLimitConfig(BaseModel):
    """Global rate limit defaults and per-scope overrides."""
    default_requests: int = Field(default=10, description="Requests per window when no scope rule matches")
    default_window: int = Field(default=60, description="Window length in seconds when no scope rule matches")
    scopes: Dict[str, RateLimitRule] = Field(
        default_factory=dict,
        description="Rules keyed by full scope ('provider:operation') or operation name",
    )


class RetryConfig(BaseModel):
    """Retry policy for upstream requests."""
    max_retries: int = Field(default=3, description="Maximum attempts per request")
    retryable_status_codes: List[int] = Field(
        default=[500, 502, 503, 504],
        description="HTTP status codes that trigger retries; 429 is classified as quota and never retried",
    )
    backoff_cap: float = Field(default=30.0, description="Maximum backoff between attempts in seconds")
    request_timeout: float = Field(default=30.0, description="Per-attempt request timeout in seconds")
    connect_timeout: float = Field(default=5.0, description="HTTP connect timeout in seconds")

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_retries must be at least 1, got: {v}")
        return v


class ManagerConfig(BaseModel):
    """Provider orchestration settings."""
    load_balancing: str = Field(default=LoadBalancing.PRIORITY.value, description="Provider selection policy")
    primary: Optional[str] = Field(default=None, description="Primary provider key")
    fallback: Optional[str] = Field(default=None, description="Designated fallback provider key")
    stats_flush_interval: int = Field(default=10, description="Persist statistics every N updates")
    default_chunk_size: int = Field(default=50, description="Bulk chunk size when a provider declares none")

    @field_validator("load_balancing")
    @classmethod
    def validate_load_balancing(cls, v: str) -> str:
        allowed = [mode.value for mode in LoadBalancing]
        if v not in allowed:
            raise ValueError(f"load_balancing must be one of {allowed}, got: {v}")
        return v

    @field_validator("stats_flush_interval", "default_chunk_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"value must be positive, got: {v}")
        return v


class QueueConfig(BaseModel):
    """Background queue settings."""
    batch_size: int = Field(default=10, description="Jobs processed per pass when no limit is given")
    max_retries: int = Field(default=3, description="Attempts before a job fails permanently")
    job_timeout: float = Field(default=30.0, description="Timeout for a single job in seconds")
    lock_timeout: int = Field(default=300, description="Seconds after which a processing flag is stale")
    pass_time_budget: float = Field(default=240.0, description="Stop a pass after this many seconds")
    memory_limit_percent: float = Field(default=90.0, description="Stop a pass above this system memory usage")
    retention_days: int = Field(default=30, description="Days to keep terminal jobs")
    backoff_base: int = Field(default=60, description="Retry delay base in seconds")
    backoff_cap: int = Field(default=3600, description="Maximum retry delay in seconds")
    immediate_processing: bool = Field(default=True, description="Process high priority jobs right away")

    @field_validator("batch_size", "lock_timeout", "retention_days")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"value must be positive, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_lock_outlives_pass(self) -> "QueueConfig":
        # A pass may run its budget plus one job past the last stop check
        if self.pass_time_budget + self.job_timeout >= self.lock_timeout:
            raise ValueError(
                f"pass_time_budget + job_timeout ({self.pass_time_budget + self.job_timeout}) "
                f"must be below lock_timeout ({self.lock_timeout})"
            )
        return self


class StorageConfig(BaseModel):
    """Backends for the key/value store and the job table."""
    backend: str = Field(default="memory", description="Key/value backend: memory or redis")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    namespace: str = Field(default="gateway:", description="Key prefix inside the shared store")
    database_url: Optional[str] = Field(default=None, description="SQLAlchemy URL for the job table")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in ("memory", "redis"):
            raise ValueError(f"backend must be 'memory' or 'redis', got: {v}")
        return v


class ProviderConfig(BaseModel):
    """Configuration for a single upstream provider."""
    key: str = Field(description="Provider identifier")
    type: str = Field(default="rest", description="Implementation: rest or paapi")
    enabled: bool = Field(default=True)
    priority: int = Field(default=10, description="Lower values are preferred")
    base_url: Optional[str] = Field(default=None, description="Base URL for REST providers")
    marketplace: str = Field(default="US")
    credentials: Dict[str, str] = Field(default_factory=dict)
    capabilities: Optional[List[str]] = Field(
        default=None,
        description="Restrict the operations this provider is used for",
    )
    max_batch_size: Optional[int] = Field(default=None, description="Identifiers per bulk request")
    credits_per_request: int = Field(default=1)
    daily_limit: int = Field(default=8640, description="Daily credit budget for quota reporting")
    rate_limits: Dict[str, RateLimitRule] = Field(
        default_factory=dict,
        description="Per-operation rate limits for this provider",
    )

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in ("rest", "paapi"):
            raise ValueError(f"provider type must be 'rest' or 'paapi', got: {v}")
        return v

    @field_validator("base_url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https://, got: {v}")
        return v

    @field_validator("capabilities")
    @classmethod
    def validate_capabilities(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        allowed = {op.value for op in Operation}
        unknown = [name for name in v if name not in allowed]
        if unknown:
            raise ValueError(f"unknown capabilities: {unknown}")
        return v


class GatewayConfig(BaseModel):
    """Top-level gateway configuration."""

    cache: CacheConfig = Field(default_factory=CacheConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    manager: ManagerConfig = Field(default_factory=ManagerConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    providers: List[ProviderConfig] = Field(default_factory=list)

    log_level: str = Field(default="INFO", description="Logging level")
    enable_request_logging: bool = Field(default=True, description="Record upstream request log entries")
    request_log_size: int = Field(default=1000, description="Request log entries kept in memory")

    @model_validator(mode="after")
    def validate_provider_keys(self) -> "GatewayConfig":
        keys = [provider.key for provider in self.providers]
        duplicates = {key for key in keys if keys.count(key) > 1}
        if duplicates:
            raise ValueError(f"duplicate provider keys: {sorted(duplicates)}")
        for role in ("primary", "fallback"):
            name = getattr(self.manager, role)
            if name is not None and keys and name not in keys:
                raise ValueError(f"manager.{role} '{name}' is not a configured provider")
        return self

    @property
    def enabled_providers(self) -> List[ProviderConfig]:
        return [p for p in self.providers if p.enabled]

    @classmethod
    def from_env(cls) -> Dict[str, Any]:
        """Collect overrides from environment variables as a nested dict."""
        env_mappings = {
            "GATEWAY_LOG_LEVEL": ("log_level", str),
            "GATEWAY_CACHE_ENABLED": ("cache.enabled", _parse_bool),
            "GATEWAY_CACHE_DEFAULT_TTL": ("cache.default_ttl", int),
            "GATEWAY_MAX_RETRIES": ("retry.max_retries", int),
            "GATEWAY_REQUEST_TIMEOUT": ("retry.request_timeout", float),
            "GATEWAY_LOAD_BALANCING": ("manager.load_balancing", str),
            "GATEWAY_PRIMARY_PROVIDER": ("manager.primary", str),
            "GATEWAY_FALLBACK_PROVIDER": ("manager.fallback", str),
            "GATEWAY_QUEUE_BATCH_SIZE": ("queue.batch_size", int),
            "GATEWAY_QUEUE_MAX_RETRIES": ("queue.max_retries", int),
            "GATEWAY_STORAGE_BACKEND": ("storage.backend", str),
            "GATEWAY_REDIS_URL": ("storage.redis_url", str),
            "GATEWAY_DATABASE_URL": ("storage.database_url", str),
        }

        overrides: Dict[str, Any] = {}
        for env_var, (path, convert) in env_mappings.items():
            if env_var in os.environ:
                _set_path(overrides, path, convert(os.environ[env_var]))
        return overrides


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _set_path(target: Dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigManager:
    """Manages configuration loading with override precedence."""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = config_file or Path("config/config.yaml")
        self._config: Optional[GatewayConfig] = None

    def load_config(self, cli_overrides: Optional[Dict[str, Any]] = None) -> GatewayConfig:
        """
        Load configuration with override precedence: CLI > ENV > YAML.

        CLI overrides use dotted keys (``"queue.batch_size"``) or top-level
        field names; ``None`` values are ignored.

        Args:
            cli_overrides: Optional dictionary of CLI flag overrides

        Returns:
            Fully merged GatewayConfig instance

        Raises:
            pydantic.ValidationError: If configuration validation fails
        """
        config_dict: Dict[str, Any] = {}

        if self.config_file.exists():
            with open(self.config_file, "r") as f:
                yaml_config = yaml.safe_load(f)
                if yaml_config:
                    config_dict = _deep_merge(config_dict, yaml_config)

        config_dict = _deep_merge(config_dict, GatewayConfig.from_env())

        if cli_overrides:
            cli_dict: Dict[str, Any] = {}
            for key, value in cli_overrides.items():
                if value is not None:
                    _set_path(cli_dict, key, value)
            config_dict = _deep_merge(config_dict, cli_dict)

        self._config = GatewayConfig(**config_dict)
        return self._config

    @property
    def config(self) -> GatewayConfig:
        """Get the loaded configuration."""
        if self._config is None:
            self._config = self.load_config()
        return self._config
