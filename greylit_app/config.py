"""
Runtime configuration for Greylit.

Everything is read from environment variables (a local .env file is loaded
first). Unset or malformed values fall back to the defaults below.

Usage:
    from greylit_app.config import get_settings

    settings = get_settings()
    settings.cache_ttl  # 3600
"""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_TRUTHY = ('1', 'true', 'yes', 'on')


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}={raw!r}, using {default}")
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.environ.get(name)
    if not raw:
        return list(default)
    return [item.strip().lower() for item in raw.split(',') if item.strip()]


@dataclass
class Settings:
    """Application settings."""

    database_url: Optional[str] = None

    # Provider credentials
    serper_api_key: Optional[str] = None
    serpapi_api_key: Optional[str] = None

    # Search defaults
    default_providers: List[str] = field(default_factory=lambda: ['serper'])
    default_max_results: int = 50

    # Cache
    cache_enabled: bool = True
    cache_ttl: int = 3600
    cache_max_size: int = 1000
    cache_persist: bool = True

    # Deduplication
    dedup_threshold: float = 0.8

    # Provider calls
    provider_timeout: float = 10.0
    provider_max_retries: int = 3
    provider_retry_delay: float = 1.0
    provider_backoff_factor: float = 2.0

    # Token bucket per provider
    rate_limit_max_tokens: int = 10
    rate_limit_refill_rate: float = 1.0
    rate_limit_time_window: float = 1.0
    rate_limit_max_wait: float = 30.0

    # Aggregate budget for one pipeline run
    pipeline_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> 'Settings':
        load_dotenv()
        return cls(
            database_url=os.environ.get('DATABASE_URL') or None,
            serper_api_key=os.environ.get('SERPER_API_KEY') or None,
            serpapi_api_key=os.environ.get('SERPAPI_API_KEY') or None,
            default_providers=_env_list('SEARCH_DEFAULT_PROVIDERS', ['serper']),
            default_max_results=_env_int('SEARCH_DEFAULT_MAX_RESULTS', 50),
            cache_enabled=_env_bool('SEARCH_CACHE_ENABLED', True),
            cache_ttl=_env_int('SEARCH_CACHE_TTL', 3600),
            cache_max_size=_env_int('SEARCH_CACHE_MAX_SIZE', 1000),
            cache_persist=_env_bool('SEARCH_CACHE_PERSIST', True),
            dedup_threshold=_env_float('DEDUP_THRESHOLD', 0.8),
            provider_timeout=_env_float('PROVIDER_TIMEOUT', 10.0),
            provider_max_retries=_env_int('PROVIDER_MAX_RETRIES', 3),
            provider_retry_delay=_env_float('PROVIDER_RETRY_DELAY', 1.0),
            provider_backoff_factor=_env_float('PROVIDER_BACKOFF_FACTOR', 2.0),
            rate_limit_max_tokens=_env_int('RATE_LIMIT_MAX_TOKENS', 10),
            rate_limit_refill_rate=_env_float('RATE_LIMIT_REFILL_RATE', 1.0),
            rate_limit_time_window=_env_float('RATE_LIMIT_TIME_WINDOW', 1.0),
            rate_limit_max_wait=_env_float('RATE_LIMIT_MAX_WAIT', 30.0),
            pipeline_timeout=_env_float('PIPELINE_TIMEOUT', 30.0),
        )

    def api_key_for(self, provider_id: str) -> Optional[str]:
        """Return the configured API key for a provider id, if any."""
        return {
            'serper': self.serper_api_key,
            'serpapi': self.serpapi_api_key,
        }.get(provider_id)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or load the global settings."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
