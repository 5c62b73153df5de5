"""
================================================================================
Greylit - Search Pipeline Package
================================================================================
Provider fan-out, deduplication, caching and orchestration.

Components:
  - executor.py - ProviderExecutor: concurrent provider calls, partial failures
  - deduplicator.py - DeduplicationEngine: URL + fuzzy title matching
  - cache.py - CacheStore: fingerprinted TTL cache with optional DB tier
  - storage.py - SearchStorage: request/result/relationship persistence
  - processor.py - ResultsProcessor: the state machine tying them together
================================================================================
"""

from .models import (
    CanonicalResult,
    DeduplicationOptions,
    ProcessingContext,
    ProcessingResult,
    SearchParams,
)
from .deduplicator import DeduplicationEngine
from .cache import CacheStore, fingerprint
from .executor import ProviderExecutor
from .storage import SearchStorage
from .processor import PipelineRun, ResultsProcessor

__all__ = [
    'CanonicalResult', 'DeduplicationOptions', 'ProcessingContext', 'ProcessingResult',
    'SearchParams', 'DeduplicationEngine', 'CacheStore', 'fingerprint',
    'ProviderExecutor', 'SearchStorage', 'PipelineRun', 'ResultsProcessor',
]
