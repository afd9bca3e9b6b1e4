from __future__ import annotations

from flask import current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_login import LoginManager, current_user
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

__all__ = [
    "db",
    "migrate",
    "limiter",
    "login_manager",
]

db = SQLAlchemy()
migrate = Migrate(compare_type=True, render_as_batch=True)


def _default_rate_limits():
    """Resolve default rate limits from config or fall back to safe defaults."""
    config_value = current_app.config.get("RATELIMIT_DEFAULT")
    if isinstance(config_value, str) and config_value.strip():
        normalized = config_value.replace(",", ";").replace("|", ";").split(";")
        limits = [entry.strip() for entry in normalized if entry.strip()]
        if limits:
            return limits
    return ["5000 per hour", "1000 per minute"]


def _limiter_key_func():
    """Key traffic per actor when the gateway identified one; otherwise per IP."""
    if current_user and current_user.is_authenticated:
        actor_id = current_user.get_id()
        if actor_id:
            return f"actor:{actor_id}"
    return get_remote_address()


limiter = Limiter(
    key_func=_limiter_key_func,
    default_limits=_default_rate_limits,
)

login_manager = LoginManager()
