"""
Celery Application Configuration for Greylit.

Runs search pipelines in the background with Redis as the broker. Optional
at runtime: when Redis is unreachable (or CELERY_ENABLED=false) the API
runs pipelines inline.

Setup:
1. Start Redis: `redis-server`
2. Set environment variable: `CELERY_BROKER_URL=redis://localhost:6379/0`
3. Start a worker: `celery -A greylit_app.celery_app worker --loglevel=info`

Usage:
    from greylit_app.celery_app import is_celery_available
    from greylit_app.tasks import process_search_task

    if is_celery_available():
        result = process_search_task.delay(request_id, owner_id)
"""

import os

import redis
from celery import Celery

# Redis connection URL from environment (defaults to localhost)
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')

# Flag to track if Celery is actually usable (broker reachable)
_celery_tested = False
_celery_working = False


def _test_redis_connection() -> bool:
    """Test if Redis is actually reachable."""
    try:
        client = redis.from_url(CELERY_BROKER_URL, socket_connect_timeout=2)
        client.ping()
        return True
    except redis.RedisError:
        return False


def is_celery_available() -> bool:
    """
    Check if Celery is enabled AND Redis is reachable.
    Results are cached after first check.
    """
    global _celery_tested, _celery_working

    if _celery_tested:
        return _celery_working

    _celery_tested = True

    if os.environ.get('CELERY_ENABLED', '').lower() in ('false', '0', 'no'):
        _celery_working = False
        return False

    _celery_working = _test_redis_connection()
    return _celery_working


celery_app = Celery(
    'greylit',
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=['greylit_app.tasks.search']
)

celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # A pipeline run is bounded by PIPELINE_TIMEOUT plus persistence
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,
    task_soft_time_limit=240,

    worker_prefetch_multiplier=1,

    result_expires=86400,

    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=3,
)
