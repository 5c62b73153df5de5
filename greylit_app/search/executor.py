"""
================================================================================
Greylit - Provider Executor
================================================================================
Fans one logical query out to every requested provider concurrently.

Flow:
  1. Resolve requested provider ids against the configured adapters
  2. Start one task per provider (each adapter rate-limits and retries itself)
  3. Wait for all of them, bounded by an aggregate timeout
  4. Collect results from the providers that succeeded and a failure record
     for every provider that did not

A failing provider never aborts the batch. Deciding what "everyone failed"
means is left to the caller (ResultsProcessor).
================================================================================
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Dict, List, Optional

from ..errors import SearchError
from .models import (
    ExecutionResult,
    ProcessingContext,
    ProviderFailure,
    SearchParams,
)

if TYPE_CHECKING:
    from ..providers.base import BaseSearchProvider

logger = logging.getLogger(__name__)


class ProviderExecutor:
    """Concurrent, partial-failure tolerant provider fan-out."""

    def __init__(
        self,
        providers: Dict[str, 'BaseSearchProvider'],
        default_providers: Optional[List[str]] = None,
        timeout: Optional[float] = 30.0,
    ):
        """
        Args:
            providers: Configured adapters keyed by provider id
            default_providers: Used when a request names no providers
            timeout: Aggregate budget for one execution, in seconds
        """
        self.providers = providers
        self.default_providers = list(default_providers or providers.keys())
        self.timeout = timeout

    def resolve(self, params: SearchParams) -> List[str]:
        """Requested provider ids in request order, without repeats."""
        requested = params.providers or self.default_providers
        seen = []
        for provider_id in requested:
            provider_id = provider_id.strip().lower()
            if provider_id and provider_id not in seen:
                seen.append(provider_id)
        return seen

    async def execute(
        self,
        params: SearchParams,
        context: Optional[ProcessingContext] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        """
        Run the query against every requested provider.

        Returns:
            ExecutionResult with the successful providers' canonical results
            (in request order) and one ProviderFailure per failed provider.
        """
        start_time = time.time()
        budget = timeout if timeout is not None else self.timeout
        execution = ExecutionResult()

        tasks: Dict[str, asyncio.Task] = {}
        for provider_id in self.resolve(params):
            provider = self.providers.get(provider_id)
            if provider is None:
                execution.failures.append(ProviderFailure(
                    provider=provider_id,
                    error_type='ProviderUnavailableError',
                    message=f"Provider '{provider_id}' is unknown or not configured",
                ))
                continue
            tasks[provider_id] = asyncio.create_task(
                provider.search(params), name=f"search:{provider_id}"
            )

        if not tasks:
            logger.warning(f"No usable providers for '{params.query}'")
            return execution

        prefix = self._log_prefix(context)
        logger.info(f"{prefix}Querying {len(tasks)} providers: {', '.join(tasks)}")

        done, pending = await asyncio.wait(tasks.values(), timeout=budget)

        if pending:
            execution.timed_out = True
            for task in pending:
                task.cancel()
            # Let cancelled tasks unwind before we return
            await asyncio.gather(*pending, return_exceptions=True)

        for provider_id, task in tasks.items():
            if task in pending:
                logger.warning(f"{prefix}{provider_id}: no response within {budget}s")
                execution.failures.append(ProviderFailure(
                    provider=provider_id,
                    error_type='ProviderNetworkError',
                    message=f"No response within {budget}s",
                    retryable=True,
                ))
                continue

            error = task.exception()
            if error is None:
                results = task.result() or []
                execution.results.extend(results)
                execution.succeeded.append(provider_id)
                logger.info(f"{prefix}{provider_id}: {len(results)} results")
            elif isinstance(error, SearchError):
                logger.warning(f"{prefix}{provider_id} failed: {error.__class__.__name__}: {error}")
                execution.failures.append(ProviderFailure(
                    provider=provider_id,
                    error_type=error.__class__.__name__,
                    message=str(error),
                    retryable=error.retryable,
                    status_code=error.status_code,
                ))
            else:
                logger.error(f"{prefix}{provider_id} crashed: {error!r}")
                execution.failures.append(ProviderFailure(
                    provider=provider_id,
                    error_type=error.__class__.__name__,
                    message=str(error) or repr(error),
                ))

        elapsed = time.time() - start_time
        logger.info(
            f"{prefix}Execution finished in {elapsed:.2f}s: {len(execution.results)} results, "
            f"{len(execution.succeeded)} ok, {len(execution.failures)} failed"
        )
        return execution

    def rate_limit_status(self) -> Dict[str, Dict]:
        """Token bucket state per configured provider."""
        status = {}
        for provider_id, provider in self.providers.items():
            bucket = provider.get_rate_limit_status()
            status[provider_id] = {
                'available': round(bucket.available, 2),
                'max_tokens': bucket.max_tokens,
                'is_limited': bucket.is_limited,
                'reset_at': bucket.reset_at.isoformat() if bucket.reset_at else None,
            }
        return status

    @staticmethod
    def _log_prefix(context: Optional[ProcessingContext]) -> str:
        if context and context.batch_id:
            return f"[{context.batch_id} {context.batch_index + 1}/{context.batch_total}] "
        return ""
