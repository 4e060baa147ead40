"""Exceptions raised inside providers and classified into ``ErrorKind``."""

from typing import Any, Optional

from product_gateway.models.data_models import ErrorKind


class ProviderError(Exception):
    """Base class for classified provider failures."""

    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class QuotaExceededError(ProviderError):
    """Local rate limit hit or upstream throttling."""

    kind = ErrorKind.QUOTA

    def __init__(
        self,
        message: str = "API quota exceeded",
        code: Optional[int] = 429,
        details: Any = None,
        reset_at: Optional[float] = None,
    ):
        super().__init__(message, code, details)
        self.reset_at = reset_at


class AuthError(ProviderError):
    """Missing or rejected credentials."""

    kind = ErrorKind.AUTH

    def __init__(self, message: str = "Authentication failed", code: Optional[int] = 401, details: Any = None):
        super().__init__(message, code, details)


class TransientError(ProviderError):
    """Network failure or retryable HTTP status."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message, status_code, details)
        self.status_code = status_code


class NotFoundError(ProviderError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str = "Item not found", code: Optional[int] = 404, details: Any = None):
        super().__init__(message, code, details)


class MalformedResponseError(ProviderError):
    kind = ErrorKind.MALFORMED


class UpstreamError(ProviderError):
    """Non-retryable upstream error that fits no other kind."""

    kind = ErrorKind.UNKNOWN
