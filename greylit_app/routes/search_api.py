"""Search API Blueprint.

Thin JSON surface over the ResultsProcessor: create and run a search
request, re-run it, and read back its status and persisted results.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from flask import Blueprint, jsonify, request

from greylit_app.config import get_settings
from greylit_app.errors import GreylitError, PipelineCancelledError, PipelineError, ValidationError
from greylit_app.extensions import get_processor, run_pipeline
from greylit_app.log import log
from greylit_app.rate_limit import limit_heavy, limit_light
from greylit_app.search import ProcessingContext, SearchParams, SearchStorage
from greylit_app.tasks import is_celery_available, process_search_task
from .validators import parse_search_payload, sanitize_string


search_bp = Blueprint('search_api', __name__, url_prefix='/api/search')

OWNER_HEADER = 'X-User-Id'

storage = SearchStorage()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error(message: str, detail: Optional[Any] = None, code: str = 'invalid_request', status: int = 400):
    payload = {'error': message, 'code': code}
    if detail:
        payload['detail'] = detail
    return jsonify(payload), status


def _current_owner_id() -> Optional[str]:
    """Owner id asserted by the authenticating proxy in front of us."""
    owner = request.headers.get(OWNER_HEADER)
    if not owner:
        return None
    return sanitize_string(owner, 255).strip() or None


def _load_owned_request(request_id: str) -> Optional[Dict[str, Any]]:
    row = storage.get_request(request_id)
    if row is None or row.get('owner_id') != _current_owner_id():
        return None
    return row


def _params_from_request(row: Dict[str, Any], overrides: Dict[str, Any]) -> SearchParams:
    filters = dict(row.get('filters') or {})
    if 'use_cache' in overrides:
        if not isinstance(overrides['use_cache'], bool):
            raise ValidationError("Field 'use_cache' must be bool", field='use_cache')
        filters['use_cache'] = overrides['use_cache']
    params = SearchParams.from_filters(row['query'], filters)
    params.validate()
    return params


def _run(params: SearchParams, row: Dict[str, Any]):
    context = ProcessingContext(owner_id=row.get('owner_id'), search_request_id=row['id'])
    result = run_pipeline(params, context)
    payload = result.to_dict()
    payload['search_request'] = storage.get_request(row['id'])
    return payload


@search_bp.errorhandler(GreylitError)
def handle_greylit_error(e: GreylitError):
    """Typed pipeline errors -> JSON with a matching status code."""
    extra = {k: v for k, v in e.to_dict().items() if k not in ('error', 'code')}
    if isinstance(e, ValidationError):
        status = 400
    elif isinstance(e, PipelineCancelledError):
        status = 404
    elif isinstance(e, PipelineError) and e.reason == 'in_progress':
        status = 409
    elif isinstance(e, PipelineError):
        status = 502
    else:
        status = 500
    log(f"Search API error {status}: {e.code}: {e}")
    return _error(str(e), detail=extra or None, code=e.code, status=status)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@search_bp.route('', methods=['POST'])
@limit_heavy
def create_search():
    """
    Create a search request and run it.

    Payload:
    {
        "query": str,
        "max_results": int,          # 1-100
        "file_types": [str],         # pdf, doc, docx, ...
        "domain": str,
        "providers": [str],          # serper, serpapi
        "use_cache": bool,
        "deduplication": bool | {"threshold": float, ...},
        "search_title": str,
        "is_saved": bool,
        "background": bool           # queue on Celery when a broker is up
    }
    """
    data = request.get_json(silent=True)
    if data is None:
        return _error('Request body must be JSON')

    settings = get_settings()
    params = parse_search_payload(
        data,
        default_providers=settings.default_providers,
        default_max_results=settings.default_max_results,
    )
    title = data.get('search_title')
    row = storage.create_request(
        params,
        owner_id=_current_owner_id(),
        search_title=sanitize_string(title, 500) if isinstance(title, str) else None,
        is_saved=data.get('is_saved') is True,
    )
    log(f"Search request {row['id']} created for '{params.query}'")

    if data.get('background') is True and is_celery_available():
        task = process_search_task.delay(row['id'], row.get('owner_id'))
        return jsonify({'search_request': row, 'task_id': task.id}), 202

    return jsonify(_run(params, row)), 201


@search_bp.route('/<request_id>/execute', methods=['POST'])
@limit_heavy
def execute_search(request_id: str):
    """Re-run an existing request (retry after error, or refresh)."""
    row = _load_owned_request(request_id)
    if row is None:
        return _error('Search request not found', code='not_found', status=404)

    overrides = request.get_json(silent=True) or {}
    params = _params_from_request(row, overrides)
    return jsonify(_run(params, row))


@search_bp.route('/<request_id>', methods=['GET'])
@limit_light
def get_search(request_id: str):
    row = _load_owned_request(request_id)
    if row is None:
        return _error('Search request not found', code='not_found', status=404)
    return jsonify(row)


@search_bp.route('/<request_id>/results', methods=['GET'])
@limit_light
def get_search_results(request_id: str):
    """
    Persisted results of a request, ordered by rank.

    ?include_duplicates=true also returns rows removed by deduplication,
    each with its duplicate relationships.
    """
    row = _load_owned_request(request_id)
    if row is None:
        return _error('Search request not found', code='not_found', status=404)

    include_duplicates = request.args.get('include_duplicates', '').lower() in ('1', 'true', 'yes')
    results = storage.get_results(request_id, include_duplicates=include_duplicates)
    if include_duplicates:
        for item in results:
            if not item['deduped']:
                item['relationships'] = storage.get_relationships(item['id'])

    return jsonify({
        'search_request_id': request_id,
        'status': row['status'],
        'count': len(results),
        'results': results,
    })


@search_bp.route('/cache/stats', methods=['GET'])
@limit_light
def cache_stats():
    """Cache hit/miss counters and provider token buckets."""
    processor = get_processor()
    return jsonify({
        'cache': processor.cache.stats() if processor.cache else {'enabled': False},
        'providers': processor.executor.rate_limit_status(),
    })
