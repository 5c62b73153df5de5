"""Lightweight request validation helpers."""

import re
from typing import Any, Dict, List, Optional, Set

from ..errors import ValidationError
from ..search.models import DEDUP_BOOL_OPTIONS, MAX_QUERY_LENGTH, SearchParams


# Allowed provider IDs - populated at app init from the provider registry
_allowed_provider_ids: Set[str] = set()

# Safe characters for provider IDs (alphanumeric, dash, underscore)
PROVIDER_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')

# Bare host name, optionally with subdomains
DOMAIN_PATTERN = re.compile(r'^(?=.{1,253}$)([a-zA-Z0-9-]{1,63}\.)*[a-zA-Z0-9-]{1,63}$')

DEDUP_OPTION_KEYS = {'threshold', *DEDUP_BOOL_OPTIONS}


def set_allowed_providers(provider_ids: List[str]) -> None:
    """Set the list of valid provider IDs (called during app init)."""
    global _allowed_provider_ids
    _allowed_provider_ids = set(provider_ids)


def sanitize_string(value: str, max_length: int = 500, allow_newlines: bool = False) -> str:
    """
    Sanitize a string by removing control characters and limiting length.
    """
    if not isinstance(value, str):
        return ""

    if allow_newlines:
        result = ''.join(c for c in value if c >= ' ' or c in '\n\r\t')
    else:
        result = ''.join(c for c in value if c >= ' ')

    return result[:max_length]


def _coerce_list(value: Any, field: str) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(',') if item.strip()]
    if isinstance(value, list):
        return value
    raise ValidationError(f"Field '{field}' must be a list", field=field)


def _coerce_int(value: Any, field: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValidationError(f"Field '{field}' must be an integer", field=field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Field '{field}' must be an integer", field=field)


def validate_provider_id(provider_id: Any) -> Optional[str]:
    """
    Validate a provider ID against known providers and safe character pattern.

    Returns:
        None if valid, or error message string.
    """
    if not isinstance(provider_id, str) or not provider_id:
        return "Missing provider ID"
    if not PROVIDER_ID_PATTERN.match(provider_id):
        return "Invalid provider ID format"
    if _allowed_provider_ids and provider_id.lower() not in _allowed_provider_ids:
        return f"Unknown provider: {provider_id}"
    return None


def parse_search_payload(
    payload: Dict[str, Any],
    default_providers: Optional[List[str]] = None,
    default_max_results: int = 50,
) -> SearchParams:
    """
    Build SearchParams from a JSON body.

    Accepts both snake_case and camelCase keys (maxResults, fileTypes,
    useCache) since the same body is posted by the web client.

    Raises:
        ValidationError: naming the offending field
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    query = payload.get('query')
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("Missing required field: query", field='query')
    if len(query) > MAX_QUERY_LENGTH:
        raise ValidationError(f"Field 'query' exceeds max length {MAX_QUERY_LENGTH}", field='query')

    providers = _coerce_list(payload.get('providers'), 'providers')
    for provider_id in providers:
        error = validate_provider_id(provider_id)
        if error:
            raise ValidationError(error, field='providers')
    providers = [p.lower() for p in providers] or list(default_providers or [])

    domain = payload.get('domain')
    if domain is not None:
        if not isinstance(domain, str):
            raise ValidationError("Field 'domain' must be str", field='domain')
        domain = domain.strip().lower() or None
        if domain and not DOMAIN_PATTERN.match(domain):
            raise ValidationError(f"Invalid domain: {domain}", field='domain')

    file_types = _coerce_list(payload.get('file_types', payload.get('fileTypes')), 'file_types')

    deduplication = payload.get('deduplication', True)
    if isinstance(deduplication, dict):
        unknown = set(deduplication) - DEDUP_OPTION_KEYS
        if unknown:
            raise ValidationError(
                f"Unknown deduplication options: {', '.join(sorted(unknown))}",
                field='deduplication',
            )

    use_cache = payload.get('use_cache', payload.get('useCache', True))
    if not isinstance(use_cache, bool):
        raise ValidationError("Field 'use_cache' must be bool", field='use_cache')

    params = SearchParams(
        query=sanitize_string(query, MAX_QUERY_LENGTH).strip(),
        max_results=_coerce_int(
            payload.get('max_results', payload.get('maxResults')), 'max_results', default_max_results
        ),
        file_types=[ft.lower() if isinstance(ft, str) else ft for ft in file_types],
        domain=domain,
        providers=providers,
        page=_coerce_int(payload.get('page'), 'page', 1),
        use_cache=use_cache,
        deduplication=deduplication,
    )
    params.validate()
    return params
