# Load environment variables FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import os
import time
import uuid
from flask import Flask, jsonify, request, g


def create_app(test_config=None):
    """Create and configure an instance of the Flask application."""
    app = Flask(__name__, instance_relative_config=True)

    # =============================================================================
    # CONFIGURATION
    # =============================================================================
    app.config.from_mapping(
        JSON_SORT_KEYS=False,
        SECRET_KEY=os.environ.get('SECRET_KEY') or uuid.uuid4().hex,
        DISABLE_RATE_LIMITING=os.environ.get('DISABLE_RATE_LIMITING', 'false').lower() in ('true', '1', 'yes'),
        INIT_DATABASE=True,
    )
    if test_config:
        app.config.update(test_config)

    # Ensure instance folder exists
    try:
        os.makedirs(app.instance_path)
    except OSError:
        pass

    # =============================================================================
    # LOGGING, RATE LIMITING
    # =============================================================================
    from .log import log, debug_log_event
    from .rate_limit import init_rate_limiting

    init_rate_limiting(app)

    @app.before_request
    def assign_request_id():
        g.request_id = uuid.uuid4().hex[:12]
        g.request_start = time.time()

    @app.after_request
    def debug_request_log(response):
        start_time = getattr(g, 'request_start', None)
        duration_ms = int((time.time() - start_time) * 1000) if start_time else None
        debug_log_event({
            'event': 'request',
            'request_id': getattr(g, 'request_id', None),
            'method': request.method,
            'path': request.path,
            'query': request.query_string.decode('utf-8', errors='ignore'),
            'status': response.status_code,
            'duration_ms': duration_ms,
            'remote_addr': request.remote_addr,
            'owner_id': request.headers.get('X-User-Id'),
        })
        response.headers['X-Request-Id'] = getattr(g, 'request_id', '')
        return response

    @app.teardown_request
    def debug_exception_log(error=None):
        if not error:
            return
        debug_log_event({
            'event': 'exception',
            'request_id': getattr(g, 'request_id', None),
            'method': request.method,
            'path': request.path,
            'error_type': error.__class__.__name__,
            'error': str(error),
        })

    # =============================================================================
    # DATABASE
    # =============================================================================
    from .database import init_database, check_database_connection, get_database_stats

    if app.config.get('INIT_DATABASE'):
        init_database()

    @app.route('/api/health')
    def health():
        db_ok = check_database_connection()
        if not db_ok:
            return jsonify({'status': 'degraded', 'database': False}), 503
        return jsonify({'status': 'ok', 'database': True, 'tables': get_database_stats()})

    # =============================================================================
    # BLUEPRINTS & ROUTES
    # =============================================================================
    from .providers import PROVIDER_CLASSES
    from .routes.search_api import search_bp
    from .routes.validators import set_allowed_providers

    set_allowed_providers(list(PROVIDER_CLASSES))
    app.register_blueprint(search_bp)

    app.config['HOST'] = os.environ.get('FLASK_HOST', '127.0.0.1')
    app.config['PORT'] = int(os.environ.get('FLASK_PORT', '5000'))
    app.config['DEBUG'] = os.environ.get('FLASK_DEBUG', 'false').lower() in ('true', '1', 'yes')
    log(f"Greylit API ready on http://{app.config['HOST']}:{app.config['PORT']}")

    return app

# App instance should be created by the caller (run.py or WSGI entrypoint)
