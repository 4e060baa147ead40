"""Construct providers from configuration."""

from typing import Dict, Optional, Type

from product_gateway.fetcher.http_client import AsyncHTTPClient
from product_gateway.fetcher.retry_handler import RequestExecutor
from product_gateway.models.config import ProviderConfig
from product_gateway.providers.base import ProviderBase
from product_gateway.providers.paapi import PaApiProvider
from product_gateway.providers.rest import RestProvider


PROVIDER_TYPES: Dict[str, Type[ProviderBase]] = {
    "rest": RestProvider,
    "paapi": PaApiProvider,
}


def build_provider(
    config: ProviderConfig,
    executor: RequestExecutor,
    http_client: Optional[AsyncHTTPClient] = None,
    **kwargs,
) -> ProviderBase:
    """
    Create the provider implementation named by ``config.type``.

    Args:
        config: Provider configuration
        executor: Shared request executor
        http_client: HTTP client shared by providers
        **kwargs: Passed through (cache, store, logger, now)

    Returns:
        Provider instance

    Raises:
        ValueError: If the type is unknown or the configuration is incomplete
    """
    provider_cls = PROVIDER_TYPES.get(config.type)
    if provider_cls is None:
        raise ValueError(f"Unknown provider type: {config.type}")
    return provider_cls(config, executor, http_client=http_client, **kwargs)
