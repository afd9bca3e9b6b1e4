"""Global resilience and error-handler registration.

Synopsis:
Registers teardown and error handlers for database rollback safety and maps
engine failures onto the standard JSON error envelope.

Glossary:
- Resilience handler: Global request teardown/error behavior for known failures.
- Engine error: Any InventoryEngineError raised from a service call.
"""

from __future__ import annotations

from flask import request
from sqlalchemy.exc import DBAPIError, OperationalError

from .extensions import db
from .services.errors import InventoryEngineError
from .utils.api_responses import APIResponse


def register_resilience_handlers(app) -> None:
    """Install global DB rollback and JSON handlers for engine and database failures."""

    @app.teardown_request
    def _rollback_on_error(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.errorhandler(OperationalError)
    @app.errorhandler(DBAPIError)
    def _db_error_handler(error):
        db.session.rollback()
        app.logger.error("Database unavailable during %s %s: %s", request.method, request.path, error)
        return APIResponse.error(
            "Service temporarily unavailable. Please try again shortly.",
            status_code=503,
            error_type="database_unavailable",
        )

    @app.errorhandler(InventoryEngineError)
    def _engine_error_handler(error: InventoryEngineError):
        db.session.rollback()
        log = app.logger.warning if error.status_code >= 500 or error.retryable else app.logger.info
        log("%s on %s %s: %s", error.error_type, request.method, request.path, error)
        payload = error.details()
        errors = payload.pop("errors", None) or payload
        response, status = APIResponse.error(
            str(error),
            errors=errors,
            status_code=error.status_code,
            error_type=error.error_type,
        )
        if error.retryable:
            response.headers["Retry-After"] = "1"
        return response, status

    @app.errorhandler(404)
    def _not_found(_error):
        return APIResponse.not_found("Route")

    @app.errorhandler(405)
    def _method_not_allowed(_error):
        return APIResponse.error("Method not allowed", status_code=405, error_type="method_not_allowed")

    @app.errorhandler(429)
    def _rate_limited(error):
        return APIResponse.error(
            f"Rate limit exceeded: {getattr(error, 'description', '')}",
            status_code=429,
            error_type="rate_limited",
        )
