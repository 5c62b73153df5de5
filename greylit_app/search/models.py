"""
================================================================================
Greylit - Search Pipeline Models
================================================================================
Plain dataclasses passed between the pipeline stages.

  SearchParams        what the user asked for (query + filters + options)
  CanonicalResult     one provider-agnostic search hit
  ExecutionResult     ProviderExecutor output (results + failed providers)
  DeduplicationResult DeduplicationEngine output
  ProcessingResult    ResultsProcessor summary (also the cached payload)

None of these are ORM objects; persistence lives in greylit_app.models.
================================================================================
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..errors import ValidationError

MAX_QUERY_LENGTH = 2048
MAX_RESULTS_LIMIT = 100

# DeduplicationOptions switches; request overrides must be real booleans
DEDUP_BOOL_OPTIONS = (
    'enabled', 'enable_url_normalization', 'enable_title_matching',
    'ignore_www', 'ignore_query_params', 'ignore_case_in_path',
    'treat_subdomains_as_same', 'merge', 'log_duplicates',
)

# =============================================================================
# ENUMS
# =============================================================================

class SearchStatus(str, Enum):
    """Lifecycle of a persisted search request."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class PipelineState(str, Enum):
    """States of one ResultsProcessor run."""
    INIT = "init"
    CACHE_CHECK = "cache_check"
    EXECUTE = "execute"
    DEDUPLICATE = "deduplicate"
    ENRICH = "enrich"
    PERSIST = "persist"
    CACHE_UPDATE = "cache_update"
    COMPLETE = "complete"
    ERROR = "error"


class DuplicateReason(str, Enum):
    URL_MATCH = "url_match"
    TITLE_SIMILARITY = "title_similarity"


class FileType(str, Enum):
    """File types a provider can be asked to filter on."""
    PDF = "pdf"
    DOC = "doc"
    DOCX = "docx"
    PPT = "ppt"
    PPTX = "pptx"
    XLS = "xls"
    XLSX = "xlsx"
    HTML = "html"


# =============================================================================
# REQUEST
# =============================================================================

@dataclass
class DeduplicationOptions:
    """Knobs for DeduplicationEngine. Defaults match the service config."""
    enabled: bool = True
    threshold: float = 0.8
    enable_url_normalization: bool = True
    enable_title_matching: bool = True
    ignore_www: bool = True
    ignore_query_params: bool = True
    ignore_case_in_path: bool = True
    treat_subdomains_as_same: bool = False
    merge: bool = False
    log_duplicates: bool = True

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> 'DeduplicationOptions':
        """Return a copy with request-level overrides applied."""
        if not overrides:
            return DeduplicationOptions(**asdict(self))
        values = asdict(self)
        for key, value in overrides.items():
            if key in values and value is not None:
                values[key] = value
        return DeduplicationOptions(**values)


@dataclass
class SearchParams:
    """
    A search strategy submitted for processing.

    `deduplication` is either a bool (on/off) or a dict of overrides for
    DeduplicationOptions, e.g. {"threshold": 0.9}.
    """
    query: str
    max_results: int = 50
    file_types: List[str] = field(default_factory=list)
    domain: Optional[str] = None
    providers: List[str] = field(default_factory=list)
    page: int = 1
    use_cache: bool = True
    deduplication: Union[bool, Dict[str, Any]] = True

    @property
    def deduplication_enabled(self) -> bool:
        if isinstance(self.deduplication, dict):
            return self.deduplication.get('enabled', True) is not False
        return bool(self.deduplication)

    def validate(self) -> None:
        """
        Reject malformed requests before anything runs.

        Raises:
            ValidationError: naming the offending field
        """
        if not isinstance(self.query, str) or not self.query.strip():
            raise ValidationError("Query is required", field='query')
        if len(self.query) > MAX_QUERY_LENGTH:
            raise ValidationError(f"Query exceeds {MAX_QUERY_LENGTH} characters", field='query')
        if isinstance(self.max_results, bool) or not isinstance(self.max_results, int) \
                or not 1 <= self.max_results <= MAX_RESULTS_LIMIT:
            raise ValidationError(
                f"max_results must be between 1 and {MAX_RESULTS_LIMIT}", field='max_results'
            )
        if isinstance(self.page, bool) or not isinstance(self.page, int) or self.page < 1:
            raise ValidationError("page must be a positive integer", field='page')

        allowed = {ft.value for ft in FileType}
        for file_type in self.file_types:
            if not isinstance(file_type, str) or file_type.lower() not in allowed:
                raise ValidationError(f"Unsupported file type: {file_type}", field='file_types')
        for provider in self.providers:
            if not isinstance(provider, str) or not provider.strip():
                raise ValidationError("Provider ids must be non-empty strings", field='providers')
        if self.domain is not None and (not isinstance(self.domain, str) or ' ' in self.domain.strip()):
            raise ValidationError("domain must be a bare host name", field='domain')

        if isinstance(self.deduplication, dict):
            threshold = self.deduplication.get('threshold')
            if threshold is not None and (
                isinstance(threshold, bool)
                or not isinstance(threshold, (int, float))
                or not 0.0 <= threshold <= 1.0
            ):
                raise ValidationError("threshold must be between 0 and 1", field='deduplication.threshold')
            for key in DEDUP_BOOL_OPTIONS:
                value = self.deduplication.get(key)
                if value is not None and not isinstance(value, bool):
                    raise ValidationError(f"{key} must be a boolean", field=f'deduplication.{key}')
        elif not isinstance(self.deduplication, bool):
            raise ValidationError("deduplication must be a boolean or an object", field='deduplication')

    def dedup_overrides(self) -> Dict[str, Any]:
        """Request-level DeduplicationOptions overrides."""
        if isinstance(self.deduplication, dict):
            return dict(self.deduplication)
        return {'enabled': bool(self.deduplication)}

    @classmethod
    def from_filters(cls, query: str, filters: Optional[Dict[str, Any]]) -> 'SearchParams':
        """Rebuild params from a stored SearchRequest filter set."""
        filters = filters or {}
        values = {
            key: filters[key]
            for key in ('max_results', 'domain', 'page', 'use_cache', 'deduplication')
            if filters.get(key) is not None
        }
        return cls(
            query=query,
            file_types=list(filters.get('file_types') or []),
            providers=list(filters.get('providers') or []),
            **values,
        )

    def filters(self) -> Dict[str, Any]:
        """Filter set as stored on the SearchRequest row."""
        return {
            'max_results': self.max_results,
            'file_types': list(self.file_types),
            'domain': self.domain,
            'providers': list(self.providers),
            'page': self.page,
            'use_cache': self.use_cache,
            'deduplication': self.deduplication,
        }


@dataclass
class ProcessingContext:
    """
    Per-run context threaded through the pipeline.

    Batch fields identify a run inside a larger submission (e.g. a saved
    strategy split into several queries) without any shared global map.
    """
    owner_id: Optional[str] = None
    search_request_id: Optional[str] = None
    batch_id: Optional[str] = None
    batch_index: int = 0
    batch_total: int = 1


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class CanonicalResult:
    """One search hit, independent of which provider produced it."""
    provider: str
    title: str
    url: str
    snippet: str = ""
    rank: int = 0
    result_type: str = "organic"
    search_engine: Optional[str] = None

    # Response-level details shared by all hits of one provider call
    total_results: Optional[int] = None
    credits_used: Optional[int] = None
    search_id: Optional[str] = None
    search_url: Optional[str] = None
    related_searches: List[str] = field(default_factory=list)
    similar_questions: List[str] = field(default_factory=list)

    # Provider fields we did not map, kept verbatim
    metadata: Dict[str, Any] = field(default_factory=dict)

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Set during ENRICH
    search_request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat() if self.timestamp else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CanonicalResult':
        values = dict(data)
        stamp = values.get('timestamp')
        if isinstance(stamp, str):
            values['timestamp'] = datetime.fromisoformat(stamp)
        elif stamp is None:
            values.pop('timestamp', None)
        return cls(**values)


@dataclass
class DuplicateRelationshipRecord:
    """In-memory duplicate link produced by deduplication."""
    original: CanonicalResult
    duplicate: CanonicalResult
    confidence: float
    reason: DuplicateReason
    normalized_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'original': self.original.to_dict(),
            'duplicate': self.duplicate.to_dict(),
            'confidence': self.confidence,
            'reason': self.reason.value,
            'normalized_url': self.normalized_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DuplicateRelationshipRecord':
        return cls(
            original=CanonicalResult.from_dict(data['original']),
            duplicate=CanonicalResult.from_dict(data['duplicate']),
            confidence=float(data['confidence']),
            reason=DuplicateReason(data['reason']),
            normalized_url=data.get('normalized_url'),
        )


@dataclass
class DeduplicationResult:
    unique_results: List[CanonicalResult]
    duplicates_removed: int
    relationships: List[DuplicateRelationshipRecord] = field(default_factory=list)


@dataclass
class ProviderFailure:
    """Why one provider contributed nothing to an execution."""
    provider: str
    error_type: str
    message: str
    retryable: bool = False
    status_code: Optional[int] = None


@dataclass
class ExecutionResult:
    results: List[CanonicalResult] = field(default_factory=list)
    failures: List[ProviderFailure] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def all_failed(self) -> bool:
        return not self.succeeded and bool(self.failures)

    @property
    def degraded(self) -> bool:
        return bool(self.failures) or self.timed_out


@dataclass
class ProcessingResult:
    """Summary returned to the caller and stored in the cache."""
    unique_results: List[CanonicalResult]
    duplicates_removed: int
    cache_hit: bool = False
    duplicate_logs: Optional[List[DuplicateRelationshipRecord]] = None
    failed_providers: Dict[str, str] = field(default_factory=dict)
    degraded: bool = False
    persisted_count: int = 0
    fingerprint: Optional[str] = None
    search_request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'unique_results': [r.to_dict() for r in self.unique_results],
            'duplicates_removed': self.duplicates_removed,
            'cache_hit': self.cache_hit,
            'duplicate_logs': (
                [log.to_dict() for log in self.duplicate_logs]
                if self.duplicate_logs is not None else None
            ),
            'failed_providers': dict(self.failed_providers),
            'degraded': self.degraded,
            'persisted_count': self.persisted_count,
            'fingerprint': self.fingerprint,
            'search_request_id': self.search_request_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProcessingResult':
        logs = data.get('duplicate_logs')
        return cls(
            unique_results=[CanonicalResult.from_dict(r) for r in data['unique_results']],
            duplicates_removed=int(data['duplicates_removed']),
            cache_hit=bool(data.get('cache_hit', False)),
            duplicate_logs=(
                [DuplicateRelationshipRecord.from_dict(entry) for entry in logs]
                if logs is not None else None
            ),
            failed_providers=dict(data.get('failed_providers') or {}),
            degraded=bool(data.get('degraded', False)),
            persisted_count=int(data.get('persisted_count', 0)),
            fingerprint=data.get('fingerprint'),
            search_request_id=data.get('search_request_id'),
        )
