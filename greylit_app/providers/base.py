"""
================================================================================
Greylit - Base Search Provider
================================================================================
Abstract base class for all external search APIs.

Providers implement two things:
  - build_request(): turn SearchParams into an HTTP request
  - parse_response(): turn the provider's JSON into CanonicalResult objects

The base class owns everything else:
  - Token bucket rate limiting (one bucket per provider instance)
  - Error classification (auth / rate limit / network / bad request)
  - Bounded retries with exponential backoff
  - Per-request timeout via httpx
================================================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
import asyncio
import logging
import threading
import time

import httpx

from ..errors import (
    SearchError,
    ProviderAuthError,
    ProviderNetworkError,
    ProviderRateLimitError,
    ProviderRequestError,
)
from ..search.models import CanonicalResult, SearchParams


logger = logging.getLogger(__name__)


@dataclass
class RateLimitOptions:
    """Token bucket shape: `refill_rate` tokens are added every `time_window` seconds."""
    max_tokens: int = 10
    refill_rate: float = 1.0
    time_window: float = 1.0

    @property
    def tokens_per_second(self) -> float:
        return self.refill_rate / self.time_window


@dataclass
class RateLimitStatus:
    available: float
    max_tokens: int
    is_limited: bool
    reset_at: Optional[datetime] = None


class TokenBucketRateLimiter:
    """
    Token bucket rate limiter for provider calls.

    The bucket starts full and refills continuously. Token math happens under
    a thread lock so concurrent coroutines (or worker threads) never
    double-spend a token; waiting happens outside the lock.
    """

    def __init__(
        self,
        options: Optional[RateLimitOptions] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.options = options or RateLimitOptions()
        self._clock = clock
        self._tokens = float(self.options.max_tokens)
        self._last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed <= 0:
            return
        self._tokens = min(
            float(self.options.max_tokens),
            self._tokens + elapsed * self.options.tokens_per_second,
        )
        self._last_refill = now

    def try_acquire(self, count: int = 1) -> bool:
        """Take `count` tokens if available right now."""
        with self._lock:
            self._refill()
            if self._tokens >= count:
                self._tokens -= count
                return True
            return False

    def _time_until(self, count: int) -> float:
        with self._lock:
            self._refill()
            missing = count - self._tokens
            if missing <= 0:
                return 0.0
            return missing / self.options.tokens_per_second

    async def acquire(self, count: int = 1, max_wait: float = 30.0, provider: Optional[str] = None) -> None:
        """
        Wait (bounded) until `count` tokens can be taken.

        Raises:
            ProviderRateLimitError: if the wait would exceed max_wait
        """
        if count > self.options.max_tokens:
            raise ProviderRateLimitError(
                f"Requested {count} tokens but bucket holds {self.options.max_tokens}",
                provider=provider,
            )
        waited = 0.0
        while not self.try_acquire(count):
            wait_time = self._time_until(count)
            if waited + wait_time > max_wait:
                raise ProviderRateLimitError(
                    f"Rate limit exceeded: would need to wait {wait_time:.1f}s "
                    f"(max wait {max_wait:.1f}s)",
                    provider=provider,
                    status_code=429,
                    retry_after=wait_time,
                )
            logger.debug(f"Rate limit: waiting {wait_time:.2f}s")
            await asyncio.sleep(wait_time)
            waited += wait_time

    def status(self) -> RateLimitStatus:
        with self._lock:
            self._refill()
            available = self._tokens
        max_tokens = self.options.max_tokens
        reset_at = None
        if available < max_tokens:
            seconds = (max_tokens - available) / self.options.tokens_per_second
            reset_at = datetime.now(timezone.utc) + timedelta(seconds=seconds)
        return RateLimitStatus(
            available=available,
            max_tokens=max_tokens,
            is_limited=available < 1,
            reset_at=reset_at,
        )


class BaseSearchProvider(ABC):
    """
    Abstract base class for search providers.

    Subclasses set `id`/`name`/`endpoint` and implement build_request()
    and parse_response(). Adding a provider means adding an adapter, not
    another branch in the executor.
    """

    # Provider identification
    id: str = "base"
    name: str = "Base Provider"
    search_engine: str = "Google"

    # API configuration
    endpoint: str = ""

    # Request timeout (seconds)
    timeout: float = 10.0

    # Retry configuration
    max_retries: int = 3
    retry_delay: float = 1.0
    backoff_factor: float = 2.0

    # Longest we block on our own token bucket before giving up
    max_rate_limit_wait: float = 30.0

    def __init__(
        self,
        api_key: Optional[str],
        rate_limit: Optional[RateLimitOptions] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        backoff_factor: Optional[float] = None,
        max_rate_limit_wait: Optional[float] = None,
    ):
        self.api_key = api_key
        self.rate_limiter = TokenBucketRateLimiter(rate_limit)
        self._client = client
        if timeout is not None:
            self.timeout = timeout
        if max_retries is not None:
            self.max_retries = max_retries
        if retry_delay is not None:
            self.retry_delay = retry_delay
        if backoff_factor is not None:
            self.backoff_factor = backoff_factor
        if max_rate_limit_wait is not None:
            self.max_rate_limit_wait = max_rate_limit_wait

    def is_available(self) -> bool:
        """A provider without credentials can never succeed."""
        return bool(self.api_key)

    def get_rate_limit_status(self) -> RateLimitStatus:
        return self.rate_limiter.status()

    def _new_client(self) -> httpx.AsyncClient:
        """
        HTTP client for one search() call.

        Each call runs on whatever event loop the caller owns (a Flask
        worker thread, a Celery task), so clients are not kept between calls.
        """
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers={'Accept': 'application/json'},
        )

    # =========================================================================
    # SEARCH
    # =========================================================================

    async def search(self, params: SearchParams) -> List[CanonicalResult]:
        """
        Run one search with rate limiting and bounded retries.

        Raises:
            ProviderAuthError: immediately, never retried
            ProviderRequestError: immediately, never retried
            ProviderRateLimitError / ProviderNetworkError: after retries
        """
        if not self.is_available():
            raise ProviderAuthError(
                f"Provider {self.name} is not available: missing API key",
                provider=self.id,
            )

        if self._client is not None:
            return await self._search_with(self._client, params)
        async with self._new_client() as client:
            return await self._search_with(client, params)

    async def _search_with(self, client: httpx.AsyncClient, params: SearchParams) -> List[CanonicalResult]:
        last_error: Optional[SearchError] = None
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            try:
                await self.rate_limiter.acquire(max_wait=self.max_rate_limit_wait, provider=self.id)
                data = await self._send(client, params)
                return self.parse_response(data, params)

            except SearchError as e:
                if not e.retryable:
                    raise
                last_error = e
                if attempt == attempts - 1:
                    break

                wait_time = self.retry_delay * (self.backoff_factor ** attempt)
                if isinstance(e, ProviderRateLimitError) and e.retry_after:
                    wait_time = max(wait_time, min(e.retry_after, self.max_rate_limit_wait))
                logger.warning(
                    f"{self.id}: {e.__class__.__name__} ({e}), "
                    f"retry {attempt + 1}/{self.max_retries} in {wait_time:.1f}s"
                )
                await asyncio.sleep(wait_time)

        raise last_error

    async def _send(self, client: httpx.AsyncClient, params: SearchParams) -> Dict[str, Any]:
        """Issue the HTTP request and translate failures into SearchErrors."""
        method, url, kwargs = self.build_request(params)
        kwargs.setdefault('timeout', self.timeout)

        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderNetworkError(
                f"{self.name} request timed out after {self.timeout}s", provider=self.id
            ) from e
        except httpx.RequestError as e:
            raise ProviderNetworkError(
                f"Connection to {self.name} failed: {e}", provider=self.id
            ) from e

        if response.status_code >= 400:
            raise self.classify_error(response)

        try:
            return response.json()
        except ValueError as e:
            raise ProviderNetworkError(
                f"{self.name} returned invalid JSON", provider=self.id,
                status_code=response.status_code,
            ) from e

    def classify_error(self, response: httpx.Response) -> SearchError:
        """Map an HTTP error response onto the provider error taxonomy."""
        status = response.status_code
        detail = response.text[:200] if response.text else response.reason_phrase

        if status in (401, 403):
            return ProviderAuthError(
                f"Authentication failed for {self.name}: {detail}",
                provider=self.id, status_code=status,
            )
        if status == 429:
            retry_after = None
            header = response.headers.get('retry-after')
            if header:
                try:
                    retry_after = float(header)
                except ValueError:
                    retry_after = None
            return ProviderRateLimitError(
                f"Rate limit exceeded for {self.name}",
                provider=self.id, status_code=429, retry_after=retry_after,
            )
        if status >= 500:
            return ProviderNetworkError(
                f"{self.name} server error ({status}): {detail}",
                provider=self.id, status_code=status,
            )
        return ProviderRequestError(
            f"Invalid request to {self.name} ({status}): {detail}",
            provider=self.id, status_code=status,
        )

    # =========================================================================
    # ADAPTER HOOKS
    # =========================================================================

    @abstractmethod
    def build_request(self, params: SearchParams) -> Tuple[str, str, Dict[str, Any]]:
        """Return (method, url, httpx request kwargs)."""

    @abstractmethod
    def parse_response(self, data: Dict[str, Any], params: SearchParams) -> List[CanonicalResult]:
        """Convert the provider payload into canonical results."""

    # =========================================================================
    # UTILITY METHODS
    # =========================================================================

    @staticmethod
    def build_query(params: SearchParams) -> str:
        """Apply domain and file type filters using search operators."""
        query = params.query.strip()
        if params.domain:
            query = f"{query} site:{params.domain}"
        if params.file_types:
            filetypes = ' OR '.join(f"filetype:{ft}" for ft in params.file_types)
            query = f"{query} ({filetypes})"
        return query

    @staticmethod
    def response_extras(data: Dict[str, Any], consumed) -> Dict[str, Any]:
        """Response-level fields other than `consumed`, kept verbatim."""
        return {k: v for k, v in (data or {}).items() if k not in consumed}

    def canonicalize(
        self,
        item: Dict[str, Any],
        index: int,
        params: SearchParams,
        field_map: Dict[str, str],
        shared: Optional[Dict[str, Any]] = None,
        response: Optional[Dict[str, Any]] = None,
    ) -> CanonicalResult:
        """
        Build a CanonicalResult from one raw hit.

        `field_map` maps canonical names (title/url/snippet/rank) to provider
        keys. Every provider key not consumed ends up in `metadata`, and
        `response` (the unmapped response-level fields) under
        `metadata['response']`.
        """
        consumed = set(field_map.values())
        offset = (max(params.page, 1) - 1) * params.max_results
        rank = item.get(field_map.get('rank', ''), None)
        if not isinstance(rank, int):
            rank = index + 1 + offset

        values = dict(shared or {})
        metadata = {k: v for k, v in item.items() if k not in consumed}
        if response:
            metadata['response'] = dict(response)
        return CanonicalResult(
            provider=self.id,
            title=item.get(field_map['title']) or '',
            url=item.get(field_map['url']) or '',
            snippet=item.get(field_map.get('snippet', ''), None) or '',
            rank=rank,
            search_engine=self.search_engine,
            metadata=metadata,
            **values,
        )

    def __repr__(self):
        return f"<{self.__class__.__name__}(id='{self.id}', max_tokens={self.rate_limiter.options.max_tokens})>"
