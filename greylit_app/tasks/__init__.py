"""
Celery tasks for Greylit background processing.

Usage:
    from greylit_app.tasks import process_search_task

    result = process_search_task.delay(request_id, owner_id)
    if result.ready():
        print(result.result)
"""

from greylit_app.celery_app import is_celery_available
from .search import process_search_task, run_search_request

__all__ = ['process_search_task', 'run_search_request', 'is_celery_available']
