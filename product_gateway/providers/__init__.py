"""Upstream provider integrations."""

from .errors import (
    AuthError,
    MalformedResponseError,
    NotFoundError,
    ProviderError,
    QuotaExceededError,
    TransientError,
    UpstreamError,
)

__all__ = [
    "AuthError",
    "MalformedResponseError",
    "NotFoundError",
    "ProviderError",
    "QuotaExceededError",
    "TransientError",
    "UpstreamError",
]
