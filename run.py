#!/usr/bin/env python3
"""
Development server entry point using the application factory
"""
import logging
import os
import sys

from stockledger import create_app

app = create_app()


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "on", "yes"}


if __name__ == '__main__':
    env = app.config.get('ENV', 'development')
    debug_enabled = env != 'production' and _env_flag('FLASK_DEBUG', default=True)

    if env == 'production':
        logging.basicConfig(level=logging.ERROR, stream=sys.stderr)
        logging.error("Refusing to start the Flask dev server in production. Run `gunicorn wsgi:app` instead.")
        raise SystemExit(2)

    app.run(
        host='0.0.0.0',
        port=int(os.environ.get('PORT', 5000)),
        debug=debug_enabled,
        use_reloader=debug_enabled,
    )
