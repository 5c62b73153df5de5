"""
Celery task for running a search pipeline in the background.

Batch submissions (one saved strategy split into several queries) pass
batch_id / batch_index / batch_total explicitly; each task gets its own
ProcessingContext, so no in-flight map is shared between workers.
"""

from typing import Any, Dict, Optional

from greylit_app.celery_app import celery_app
from greylit_app.errors import GreylitError, PipelineCancelledError
from greylit_app.extensions import run_pipeline
from greylit_app.log import log
from greylit_app.search import ProcessingContext, SearchParams, SearchStorage


def run_search_request(
    request_id: str,
    owner_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    batch_index: int = 0,
    batch_total: int = 1,
    use_cache: Optional[bool] = None,
) -> Dict[str, Any]:
    """
    Run the pipeline for a stored SearchRequest.

    Returns a JSON-serializable summary. Typed pipeline failures are
    reported in the summary; the request row already carries the error.
    """
    storage = SearchStorage()
    row = storage.get_request(request_id)
    if row is None or row.get('owner_id') != owner_id:
        raise PipelineCancelledError(f"Search request {request_id} not found", reason='request_missing')

    params = SearchParams.from_filters(row['query'], row.get('filters'))
    if use_cache is not None:
        params.use_cache = use_cache

    context = ProcessingContext(
        owner_id=owner_id,
        search_request_id=request_id,
        batch_id=batch_id,
        batch_index=batch_index,
        batch_total=batch_total,
    )
    result = run_pipeline(params, context)
    return {
        'status': 'completed',
        'search_request_id': request_id,
        'batch_id': batch_id,
        'batch_index': batch_index,
        'unique_results': len(result.unique_results),
        'duplicates_removed': result.duplicates_removed,
        'cache_hit': result.cache_hit,
        'degraded': result.degraded,
        'failed_providers': result.failed_providers,
    }


@celery_app.task(bind=True, name='greylit.process_search')
def process_search_task(
    self,
    request_id: str,
    owner_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    batch_index: int = 0,
    batch_total: int = 1,
    use_cache: Optional[bool] = None,
) -> Dict[str, Any]:
    """Background entry point for one pipeline run."""
    log(f"[Task {self.request.id}] Processing search request {request_id}")
    try:
        return run_search_request(
            request_id, owner_id,
            batch_id=batch_id, batch_index=batch_index,
            batch_total=batch_total, use_cache=use_cache,
        )
    except GreylitError as e:
        log(f"[Task {self.request.id}] Search request {request_id} failed: {e}")
        return {
            'status': 'error',
            'search_request_id': request_id,
            'batch_id': batch_id,
            'batch_index': batch_index,
            **e.to_dict(),
        }
