"""
================================================================================
Greylit - Search Provider Registry
================================================================================
Maps provider ids to adapter classes and builds configured instances.

Adding a provider:
  1. Subclass BaseSearchProvider in a new module
  2. Register it in PROVIDER_CLASSES
================================================================================
"""

from typing import Dict, Optional, Type
import logging

from .base import BaseSearchProvider, RateLimitOptions, RateLimitStatus, TokenBucketRateLimiter
from .serper import SerperProvider
from .serpapi import SerpApiProvider
from ..config import Settings

logger = logging.getLogger(__name__)


PROVIDER_CLASSES: Dict[str, Type[BaseSearchProvider]] = {
    SerperProvider.id: SerperProvider,
    SerpApiProvider.id: SerpApiProvider,
}


def create_provider(provider_id: str, api_key: Optional[str], **kwargs) -> BaseSearchProvider:
    """Instantiate one adapter by id."""
    cls = PROVIDER_CLASSES.get(provider_id)
    if cls is None:
        raise KeyError(f"Unknown search provider: {provider_id}")
    return cls(api_key, **kwargs)


def build_providers(settings: Settings) -> Dict[str, BaseSearchProvider]:
    """
    Build every provider that has credentials configured.

    Providers without an API key are skipped (and logged) rather than
    registered in a permanently failing state.
    """
    rate_limit = RateLimitOptions(
        max_tokens=settings.rate_limit_max_tokens,
        refill_rate=settings.rate_limit_refill_rate,
        time_window=settings.rate_limit_time_window,
    )
    providers: Dict[str, BaseSearchProvider] = {}
    for provider_id in PROVIDER_CLASSES:
        api_key = settings.api_key_for(provider_id)
        if not api_key:
            logger.info(f"Search provider '{provider_id}' disabled: no API key configured")
            continue
        providers[provider_id] = create_provider(
            provider_id,
            api_key,
            rate_limit=rate_limit,
            timeout=settings.provider_timeout,
            max_retries=settings.provider_max_retries,
            retry_delay=settings.provider_retry_delay,
            backoff_factor=settings.provider_backoff_factor,
            max_rate_limit_wait=settings.rate_limit_max_wait,
        )

    logger.info(f"Initialized {len(providers)} search providers: {', '.join(providers) or 'none'}")
    return providers


__all__ = [
    'BaseSearchProvider', 'RateLimitOptions', 'RateLimitStatus', 'TokenBucketRateLimiter',
    'SerperProvider', 'SerpApiProvider', 'PROVIDER_CLASSES',
    'create_provider', 'build_providers',
]
