"""Core data models for the product gateway."""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


class ResponseType(Enum):
    """Kinds of response envelopes."""
    PRODUCT = "product"
    SEARCH = "search"
    ERROR = "error"
    UNKNOWN = "unknown"


class ErrorKind(Enum):
    """Failure taxonomy shared by providers, the manager and the queue."""
    QUOTA = "quota"
    AUTH = "auth"
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"
    UNKNOWN = "unknown"


class Operation(Enum):
    """Provider capabilities."""
    SEARCH = "search"
    PRODUCT = "product"
    MULTIPLE_PRODUCTS = "multiple_products"
    VARIATIONS = "variations"
    OFFERS = "offers"
    REVIEWS = "reviews"
    BESTSELLERS = "bestsellers"
    NEW_RELEASES = "new_releases"
    CATEGORIES = "categories"


class LoadBalancing(Enum):
    """Provider selection policies."""
    PRIORITY = "priority"
    ROUND_ROBIN = "round-robin"
    LEAST_USED = "least-used"
    RANDOM = "random"


class JobStatus(Enum):
    """Queue job states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobPriority(IntEnum):
    """Queue job priorities (0-100)."""
    LOW = 10
    NORMAL = 50
    HIGH = 90
    URGENT = 100


@dataclass
class CacheEntry:
    """A single cached value with its expiry and tags."""
    key: str
    data: Any
    created: float
    expires: float
    ttl: int
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_valid(self, now: float) -> bool:
        return now < self.expires

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CacheEntry":
        return cls(
            key=raw["key"],
            data=raw["data"],
            created=float(raw["created"]),
            expires=float(raw["expires"]),
            ttl=int(raw["ttl"]),
            tags=list(raw.get("tags") or []),
            metadata=dict(raw.get("metadata") or {}),
        )


@dataclass
class RateLimitWindow:
    """Fixed request window for a single scope."""
    scope: str
    count: int
    window_seconds: int
    limit: int
    started_at: float

    def is_expired(self, now: float) -> bool:
        return now - self.started_at >= self.window_seconds

    def allows_request(self) -> bool:
        return self.count < self.limit

    @property
    def resets_at(self) -> float:
        return self.started_at + self.window_seconds


@dataclass
class ProviderStats:
    """Usage statistics for one provider."""
    total_requests: int = 0
    successes: int = 0
    failures: int = 0
    total_response_time: float = 0.0
    last_used: Optional[float] = None

    @property
    def avg_response_time(self) -> float:
        if self.successes == 0:
            return 0.0
        return self.total_response_time / self.successes

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.successes / self.total_requests

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ProviderStats":
        return cls(
            total_requests=int(raw.get("total_requests", 0)),
            successes=int(raw.get("successes", 0)),
            failures=int(raw.get("failures", 0)),
            total_response_time=float(raw.get("total_response_time", 0.0)),
            last_used=raw.get("last_used"),
        )


@dataclass
class Failure:
    """Classified failure of a provider call."""
    kind: ErrorKind
    message: str
    code: Optional[int] = None
    details: Any = None
    reset_at: Optional[float] = None

    def describe(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass
class ProviderResult:
    """Tagged result returned by every provider operation.

    Exactly one of ``value`` (on success) or ``failure`` is meaningful;
    ``value`` may legitimately be empty for successful calls.
    """
    value: Any = None
    failure: Optional[Failure] = None
    attempts: int = 0
    cache_hit: bool = False
    credits_used: int = 0
    execution_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: Any, **kwargs) -> "ProviderResult":
        return cls(value=value, **kwargs)

    @classmethod
    def fail(
        cls,
        kind: ErrorKind,
        message: str,
        code: Optional[int] = None,
        details: Any = None,
        reset_at: Optional[float] = None,
        **kwargs,
    ) -> "ProviderResult":
        return cls(
            failure=Failure(kind=kind, message=message, code=code, details=details, reset_at=reset_at),
            **kwargs,
        )


@dataclass
class BulkResult:
    """Partial-failure result of a bulk product lookup."""
    products: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)

    def add_failed(self, ids: List[str]) -> None:
        for product_id in ids:
            if product_id not in self.failed and product_id not in self.products:
                self.failed.append(product_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"products": self.products, "failed": list(self.failed)}


@dataclass
class QueueJob:
    """A durable background job record."""
    action: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    provider_hint: Optional[str] = None
    batch_id: Optional[str] = None
    priority: int = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_retries: int = 3
    scheduled_at: float = field(default_factory=time.time)
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    result: Any = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["priority"] = int(self.priority)
        return data


@dataclass
class BatchStatus:
    """Aggregated status for all jobs sharing a batch id."""
    batch_id: str
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def progress(self) -> float:
        if self.total == 0:
            return 0.0
        return round((self.completed + self.failed) / self.total * 100, 2)

    @property
    def is_complete(self) -> bool:
        return self.pending == 0 and self.processing == 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["progress"] = self.progress
        data["is_complete"] = self.is_complete
        return data


@dataclass
class QueueRunResult:
    """Outcome of one processing pass."""
    status: str = "completed"
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    stopped_early: bool = False


@dataclass
class RequestLogEntry:
    """One upstream API request attempt."""
    id: int
    provider: str
    endpoint: str
    method: str
    request_data: str
    created_at: float
    response_code: Optional[int] = None
    response_message: Optional[str] = None
    credits_used: int = 0
    execution_time: Optional[float] = None
