"""
Rate limiting configuration for the Greylit API.

Uses Flask-Limiter to protect API endpoints from abuse. This guards our own
HTTP surface; provider quotas are handled by the token buckets in
greylit_app.providers.base.

Rate Limit Tiers:
- Heavy: POST /api/search, /api/search/<id>/execute (fan out to paid APIs)
- Light: GET /api/search/<id>, results, cache stats (database reads)
"""

import os
from flask import request, jsonify
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Initialize limiter (will be attached to app in create_app)
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["1000 per day", "200 per hour"],
    storage_uri=os.environ.get("RATELIMIT_STORAGE_URI", "memory://"),
    strategy="fixed-window",
    headers_enabled=True,
)


# ==============================================================================
# RATE LIMIT TIERS
# ==============================================================================

# Provider fan-out, costs credits
HEAVY_LIMIT = "20 per minute"

# Fast reads
LIGHT_LIMIT = "120 per minute"


def limit_heavy(f):
    """Apply heavy rate limit to operations that call search providers."""
    return limiter.limit(HEAVY_LIMIT)(f)


def limit_light(f):
    """Apply light rate limit to cheap reads."""
    return limiter.limit(LIGHT_LIMIT)(f)


# ==============================================================================
# ERROR HANDLER
# ==============================================================================

def rate_limit_exceeded_handler(e):
    """JSON 429 with the retry hint; there is no HTML surface."""
    retry_after = getattr(e, 'retry_after', None) or 60
    response = jsonify({
        "error": "Rate limit exceeded",
        "code": "rate_limited",
        "detail": str(e.description),
        "path": request.path,
        "retry_after": retry_after,
    })
    response.status_code = 429
    response.headers['Retry-After'] = str(retry_after)
    return response


def init_rate_limiting(app):
    """
    Initialize rate limiting for a Flask app.

    Call this in create_app() after app configuration.
    """
    limiter.init_app(app)
    app.errorhandler(429)(rate_limit_exceeded_handler)

    if app.config.get('DISABLE_RATE_LIMITING'):
        limiter.enabled = False

    return limiter
