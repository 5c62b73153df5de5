#!/usr/bin/env python3
"""
Greylit Development Server
Runs Flask on port 5000 with debug on and rate limiting off
"""
import os

os.environ.setdefault('DISABLE_RATE_LIMITING', 'true')

from greylit_app import create_app

if __name__ == '__main__':
    app = create_app()
    app.run(
        host='0.0.0.0',
        port=5000,
        debug=True,
        use_reloader=False
    )
