"""
Application singletons built from Settings.

The processor (and the cache inside it) is shared by every request handled
by this process; each pipeline run still gets its own PipelineRun and
ProcessingContext.
"""

import asyncio
import threading
from typing import Optional

from .config import get_settings
from .log import log
from .providers import build_providers
from .search import (
    CacheStore,
    DeduplicationEngine,
    DeduplicationOptions,
    ProcessingContext,
    ProcessingResult,
    ProviderExecutor,
    ResultsProcessor,
    SearchParams,
    SearchStorage,
)

_processor: Optional[ResultsProcessor] = None
_lock = threading.Lock()


def build_processor(settings=None) -> ResultsProcessor:
    """Wire a ResultsProcessor from settings."""
    settings = settings or get_settings()
    providers = build_providers(settings)
    executor = ProviderExecutor(
        providers,
        default_providers=settings.default_providers,
        timeout=settings.pipeline_timeout,
    )
    cache = None
    if settings.cache_enabled:
        cache = CacheStore(
            ttl=settings.cache_ttl,
            max_size=settings.cache_max_size,
            persist=settings.cache_persist,
            default_providers=executor.default_providers,
        )
    dedup_defaults = DeduplicationOptions(threshold=settings.dedup_threshold)
    log(
        f"Search pipeline ready: providers={', '.join(providers) or 'none'}, "
        f"cache={'on' if cache else 'off'}, dedup threshold={settings.dedup_threshold}"
    )
    return ResultsProcessor(
        executor,
        deduplicator=DeduplicationEngine(dedup_defaults),
        cache=cache,
        storage=SearchStorage(),
        dedup_defaults=dedup_defaults,
        timeout=settings.pipeline_timeout,
    )


def get_processor() -> ResultsProcessor:
    """Get or build the process-wide ResultsProcessor."""
    global _processor
    if _processor is None:
        with _lock:
            if _processor is None:
                _processor = build_processor()
    return _processor


def set_processor(processor: Optional[ResultsProcessor]) -> None:
    """Replace the singleton (tests, app factory reloads)."""
    global _processor
    with _lock:
        _processor = processor


def run_pipeline(params: SearchParams, context: ProcessingContext) -> ProcessingResult:
    """Run one pipeline to completion from synchronous code (views, tasks)."""
    return asyncio.run(get_processor().process(params, context))
