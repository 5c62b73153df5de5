"""
================================================================================
Greylit - Error Taxonomy
================================================================================
Exceptions raised by the search pipeline.

Hierarchy:
  GreylitError
    SearchError                 provider-scoped failure
      ProviderAuthError         401/403, missing key (never retried)
      ProviderRateLimitError    429 or local token bucket exhausted (retried)
      ProviderNetworkError      timeouts, connection errors, 5xx (retried)
      ProviderRequestError      400-class rejections (never retried)
      ProviderUnavailableError  unknown or unconfigured provider
    ValidationError             request rejected before execution
    PersistenceError            a single write failed
    PipelineError               fatal for one ResultsProcessor run
      AllProvidersFailedError
      CacheCorruptionError
      PipelineCancelledError
================================================================================
"""

from typing import Optional


class GreylitError(Exception):
    """Base class for all application errors."""

    code = "error"

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code}


# =============================================================================
# PROVIDER ERRORS
# =============================================================================

class SearchError(GreylitError):
    """Failure attributed to one search provider."""

    code = "provider_error"
    retryable = False

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["provider"] = self.provider
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        return payload


class ProviderAuthError(SearchError):
    code = "provider_auth"
    retryable = False


class ProviderRateLimitError(SearchError):
    code = "provider_rate_limited"
    retryable = True


class ProviderNetworkError(SearchError):
    code = "provider_network"
    retryable = True


class ProviderRequestError(SearchError):
    code = "provider_bad_request"
    retryable = False


class ProviderUnavailableError(SearchError):
    code = "provider_unavailable"
    retryable = False


# =============================================================================
# REQUEST / STORAGE ERRORS
# =============================================================================

class ValidationError(GreylitError):
    """Raised when a search request is rejected before execution."""

    code = "invalid_request"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.field:
            payload["field"] = self.field
        return payload


class PersistenceError(GreylitError):
    """A single storage write failed; callers log it and move on."""

    code = "persistence_error"


# =============================================================================
# PIPELINE ERRORS
# =============================================================================

class PipelineError(GreylitError):
    """Fatal failure of one pipeline run."""

    code = "pipeline_error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason or self.code

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["reason"] = self.reason
        return payload


class AllProvidersFailedError(PipelineError):
    code = "all_providers_failed"

    def __init__(self, message: str, failures: Optional[dict] = None):
        super().__init__(message, reason=self.code)
        self.failures = failures or {}

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["failures"] = self.failures
        return payload


class CacheCorruptionError(PipelineError):
    code = "cache_corrupted"


class PipelineCancelledError(PipelineError):
    """The owning search request vanished or changed owner mid-run."""

    code = "cancelled"
