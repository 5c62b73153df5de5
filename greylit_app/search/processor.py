"""
================================================================================
Greylit - Results Processor
================================================================================
Orchestrates one search run end to end.

State machine (ERROR reachable from any non-terminal state):

    INIT -> CACHE_CHECK -> COMPLETE                       (cache hit)
                        -> EXECUTE -> DEDUPLICATE -> ENRICH
                           -> PERSIST -> CACHE_UPDATE -> COMPLETE

  INIT          validate the request, move the SearchRequest to processing
  CACHE_CHECK   a hit returns the cached summary as-is
  EXECUTE       provider fan-out; every provider failing is fatal
  DEDUPLICATE   per-request options, may be disabled
  ENRICH        stamp the owning request id on every result
  PERSIST       best-effort: one failed row is logged and skipped
  CACHE_UPDATE  only complete, non-degraded, non-empty runs are cached

On failure the SearchRequest is marked error (message + timestamp) and the
typed error is re-raised to the caller.
================================================================================
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import (
    AllProvidersFailedError,
    GreylitError,
    PersistenceError,
    PipelineCancelledError,
    PipelineError,
    ValidationError,
)
from .cache import CacheStore, fingerprint
from .deduplicator import DeduplicationEngine
from .executor import ProviderExecutor
from .models import (
    CanonicalResult,
    DeduplicationOptions,
    DeduplicationResult,
    DuplicateRelationshipRecord,
    PipelineState,
    ProcessingContext,
    ProcessingResult,
    SearchParams,
)
from .storage import SearchStorage

logger = logging.getLogger(__name__)


TRANSITIONS = {
    PipelineState.INIT: {PipelineState.CACHE_CHECK},
    PipelineState.CACHE_CHECK: {PipelineState.EXECUTE, PipelineState.COMPLETE},
    PipelineState.EXECUTE: {PipelineState.DEDUPLICATE},
    PipelineState.DEDUPLICATE: {PipelineState.ENRICH},
    PipelineState.ENRICH: {PipelineState.PERSIST},
    PipelineState.PERSIST: {PipelineState.CACHE_UPDATE},
    PipelineState.CACHE_UPDATE: {PipelineState.COMPLETE},
    PipelineState.COMPLETE: set(),
    PipelineState.ERROR: set(),
}


@dataclass
class PipelineRun:
    """Bookkeeping for one process() call."""
    context: ProcessingContext = field(default_factory=ProcessingContext)
    state: PipelineState = PipelineState.INIT
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.INIT])
    error: Optional[GreylitError] = None

    def advance(self, new_state: PipelineState) -> None:
        if new_state != PipelineState.ERROR and new_state not in TRANSITIONS[self.state]:
            raise PipelineError(
                f"Illegal pipeline transition {self.state.value} -> {new_state.value}",
                reason='illegal_transition',
            )
        if self.state in (PipelineState.COMPLETE, PipelineState.ERROR):
            raise PipelineError(f"Pipeline already finished ({self.state.value})", reason='finished')
        self.state = new_state
        self.history.append(new_state)


class ResultsProcessor:
    """
    Cache check, provider execution, deduplication, persistence and cache
    update for one search request.

    Holds no per-run state; one instance serves concurrent runs.
    """

    def __init__(
        self,
        executor: ProviderExecutor,
        deduplicator: Optional[DeduplicationEngine] = None,
        cache: Optional[CacheStore] = None,
        storage: Optional[SearchStorage] = None,
        dedup_defaults: Optional[DeduplicationOptions] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            executor: Provider fan-out
            deduplicator: Defaults to a DeduplicationEngine
            cache: None disables caching
            storage: None disables request bookkeeping and persistence
            dedup_defaults: Service-level deduplication options
            timeout: Aggregate budget for provider execution (seconds)
        """
        self.executor = executor
        self.dedup_defaults = dedup_defaults or DeduplicationOptions()
        self.deduplicator = deduplicator or DeduplicationEngine(self.dedup_defaults)
        self.cache = cache
        self.storage = storage
        self.timeout = timeout
        self._clock = clock

    async def process(
        self,
        params: SearchParams,
        context: Optional[ProcessingContext] = None,
        run: Optional[PipelineRun] = None,
    ) -> ProcessingResult:
        """
        Run the pipeline for one request.

        Args:
            params: What to search for
            context: Owner, SearchRequest id and batch position
            run: Optional PipelineRun to record transitions into

        Raises:
            ValidationError: malformed request, nothing was executed
            PipelineError: fatal failure (all providers failed, corrupt
                cache, request cancelled, ...)
        """
        context = context or ProcessingContext()
        run = run or PipelineRun(context=context)
        run.context = context
        request_id = context.search_request_id
        started = self._clock()

        # INIT
        try:
            params.validate()
            if self._tracks(request_id):
                await self._call(self.storage.begin, request_id, context.owner_id)
        except (ValidationError, PipelineError) as e:
            # Nothing was claimed; leave the request row untouched
            run.error = e
            run.advance(PipelineState.ERROR)
            logger.warning(f"{self._prefix(context)}Rejected: {e}")
            raise

        try:
            result = await self._run(params, context, run)
        except PipelineError as e:
            await self._fail(run, e, request_id, cancelled=isinstance(e, PipelineCancelledError))
            raise
        except Exception as e:
            error = PipelineError(f"Unexpected pipeline failure: {e}", reason='internal')
            logger.exception(f"{self._prefix(context)}Unexpected failure")
            await self._fail(run, error, request_id)
            raise error from e

        logger.info(
            f"{self._prefix(context)}Completed in {self._clock() - started:.2f}s: "
            f"{len(result.unique_results)} unique, {result.duplicates_removed} duplicates, "
            f"cache_hit={result.cache_hit}"
        )
        return result

    async def _run(self, params: SearchParams, context: ProcessingContext, run: PipelineRun) -> ProcessingResult:
        request_id = context.search_request_id
        prefix = self._prefix(context)
        key = fingerprint(params, self.executor.default_providers)

        # CACHE_CHECK
        run.advance(PipelineState.CACHE_CHECK)
        if self.cache is not None and params.use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info(f"{prefix}Cache HIT {key[:12]} for '{params.query}'")
                cached.search_request_id = request_id
                cached.persisted_count = 0
                run.advance(PipelineState.COMPLETE)
                if self._tracks(request_id):
                    await self._call(self.storage.mark_completed, request_id)
                return cached
            logger.info(f"{prefix}Cache MISS {key[:12]} for '{params.query}'")

        # EXECUTE
        run.advance(PipelineState.EXECUTE)
        execution = await self.executor.execute(params, context, timeout=self.timeout)
        failed = {f.provider: f"{f.error_type}: {f.message}" for f in execution.failures}
        if not execution.succeeded and not execution.results:
            if not failed:
                raise AllProvidersFailedError("No search providers were requested or configured")
            raise AllProvidersFailedError(
                f"All providers failed: {', '.join(failed)}", failures=failed
            )

        # DEDUPLICATE
        run.advance(PipelineState.DEDUPLICATE)
        options = self.dedup_defaults.with_overrides(params.dedup_overrides())
        deduped = self.deduplicator.deduplicate(execution.results, options)

        # ENRICH
        run.advance(PipelineState.ENRICH)
        deduped = self._enrich(deduped, request_id)

        # PERSIST
        run.advance(PipelineState.PERSIST)
        persisted = 0
        if self._tracks(request_id):
            persisted = await self._call(self._persist, request_id, context.owner_id, deduped)

        result = ProcessingResult(
            unique_results=deduped.unique_results,
            duplicates_removed=deduped.duplicates_removed,
            cache_hit=False,
            duplicate_logs=deduped.relationships if options.log_duplicates else None,
            failed_providers=failed,
            degraded=execution.degraded,
            persisted_count=persisted,
            fingerprint=key,
            search_request_id=request_id,
        )

        # CACHE_UPDATE
        run.advance(PipelineState.CACHE_UPDATE)
        if self.cache is not None:
            if result.degraded:
                logger.info(f"{prefix}Not caching degraded result ({', '.join(failed) or 'timeout'})")
            elif not result.unique_results:
                logger.info(f"{prefix}Not caching empty result")
            else:
                self.cache.set(key, result)

        # COMPLETE
        run.advance(PipelineState.COMPLETE)
        if self._tracks(request_id):
            await self._call(self.storage.mark_completed, request_id)
        return result

    # =========================================================================
    # STAGES
    # =========================================================================

    @staticmethod
    def _enrich(deduped: DeduplicationResult, request_id: Optional[str]) -> DeduplicationResult:
        """Attach the owning request id; relationships follow the new objects."""
        if request_id is None:
            return deduped

        stamped: Dict[int, CanonicalResult] = {}

        def stamp(result: CanonicalResult) -> CanonicalResult:
            if id(result) not in stamped:
                stamped[id(result)] = replace(result, search_request_id=request_id)
            return stamped[id(result)]

        unique = [stamp(r) for r in deduped.unique_results]
        relationships = [
            replace(rel, original=stamp(rel.original), duplicate=stamp(rel.duplicate))
            for rel in deduped.relationships
        ]
        return DeduplicationResult(
            unique_results=unique,
            duplicates_removed=deduped.duplicates_removed,
            relationships=relationships,
        )

    def _persist(self, request_id: str, owner_id: Optional[str], deduped: DeduplicationResult) -> int:
        """
        Write unique rows, duplicate rows and relationships for one request.

        Returns:
            Number of unique results stored

        Raises:
            PipelineCancelledError: request deleted or re-owned before writing
        """
        if not self.storage.owns_request(request_id, owner_id):
            raise PipelineCancelledError(
                f"Search request {request_id} was removed or changed owner; writes aborted",
                reason='ownership_check_failed',
            )

        row_ids: Dict[int, str] = {}
        persisted = 0

        for result in deduped.unique_results:
            row_id = self._save(request_id, result, deduped=True)
            if row_id:
                row_ids[id(result)] = row_id
                persisted += 1

        for rel in deduped.relationships:
            if id(rel.duplicate) in row_ids:
                continue
            row_id = self._save(request_id, rel.duplicate, deduped=False)
            if row_id:
                row_ids[id(rel.duplicate)] = row_id

        for original_id, duplicate_id, rel in self._relationship_rows(deduped.relationships, row_ids):
            try:
                self.storage.save_relationship(
                    original_id, duplicate_id, rel.confidence, rel.reason.value
                )
            except PersistenceError as e:
                logger.warning(f"Skipping relationship for '{rel.duplicate.url}': {e}")

        logger.info(
            f"Persisted {persisted}/{len(deduped.unique_results)} results "
            f"and {len(deduped.relationships)} duplicates for {request_id}"
        )
        return persisted

    def _save(self, request_id: str, result: CanonicalResult, deduped: bool) -> Optional[str]:
        try:
            return self.storage.save_result(request_id, result, deduped=deduped)
        except PersistenceError as e:
            logger.warning(f"Skipping result '{result.url}': {e}")
            return None

    @staticmethod
    def _relationship_rows(
        relationships: List[DuplicateRelationshipRecord],
        row_ids: Dict[int, str],
    ) -> List[Tuple[str, str, DuplicateRelationshipRecord]]:
        rows = []
        for rel in relationships:
            original_id = row_ids.get(id(rel.original))
            duplicate_id = row_ids.get(id(rel.duplicate))
            if original_id and duplicate_id:
                rows.append((original_id, duplicate_id, rel))
        return rows

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _fail(
        self,
        run: PipelineRun,
        error: PipelineError,
        request_id: Optional[str],
        cancelled: bool = False,
    ) -> None:
        run.error = error
        failed_in = run.state
        run.advance(PipelineState.ERROR)
        logger.error(f"{self._prefix(run.context)}Failed during {failed_in.value}: {error}")
        if self._tracks(request_id) and not cancelled:
            await self._call(self.storage.mark_error, request_id, str(error))

    def _tracks(self, request_id: Optional[str]) -> bool:
        return self.storage is not None and request_id is not None

    @staticmethod
    async def _call(func, *args):
        """Run a blocking storage call off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    @staticmethod
    def _prefix(context: ProcessingContext) -> str:
        if context.search_request_id:
            return f"[{context.search_request_id[:8]}] "
        return ""
