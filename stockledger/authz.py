from __future__ import annotations

from typing import Iterable

from flask import current_app, jsonify, request
from flask_login import UserMixin

from .extensions import login_manager
from .services.errors import PermissionDeniedError

ROLES = ("clerk", "counter", "manager", "admin")
ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"


class Actor(UserMixin):
    """Identity and role supplied by the upstream authentication gateway."""

    def __init__(self, actor_id: str, role: str = "clerk", display_name: str | None = None):
        self.id = str(actor_id)
        self.role = (role or "clerk").strip().lower()
        self.display_name = display_name or self.id

    def get_id(self) -> str:
        return self.id

    def has_role(self, roles: Iterable[str]) -> bool:
        return self.role in {r.lower() for r in roles}

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def coerce(cls, value, default_role: str = "clerk") -> "Actor | None":
        """Accept an Actor, a bare actor id, or a mapping with ``id``/``role``."""
        if value is None or isinstance(value, cls):
            return value
        if isinstance(value, dict):
            actor_id = value.get("id") or value.get("actor_id")
            if not actor_id:
                return None
            return cls(actor_id, value.get("role") or default_role, value.get("display_name"))
        return cls(str(value), default_role)

    def __repr__(self):
        return f"<Actor {self.id} ({self.role})>"


def configure_login_manager(app):
    """Attach Flask-Login handlers that trust the gateway's identity headers."""
    login_manager.init_app(app)

    @login_manager.unauthorized_handler
    def _unauthorized():
        return jsonify({
            "success": False,
            "message": "Authentication required",
            "error_type": "authentication_required",
        }), 401

    @login_manager.request_loader
    def load_actor_from_request(req):
        actor_id = (req.headers.get(ACTOR_ID_HEADER) or "").strip()
        if not actor_id:
            return None
        role = (req.headers.get(ACTOR_ROLE_HEADER) or "clerk").strip().lower()
        if role not in ROLES:
            app.logger.warning("Rejected unknown actor role %r for %s %s", role, request.method, request.path)
            return None
        return Actor(actor_id, role)


def manager_roles() -> tuple[str, ...]:
    return tuple(current_app.config.get("APPROVAL_MANAGER_ROLES") or ("manager", "admin"))


def require_role(actor, roles: Iterable[str], action: str) -> Actor:
    """Coerce ``actor`` and raise PermissionDeniedError unless it holds one of ``roles``."""
    roles = tuple(roles)
    resolved = Actor.coerce(actor)
    if resolved is None or not resolved.has_role(roles):
        raise PermissionDeniedError(
            f"Actor is not permitted to {action}",
            actor_id=getattr(resolved, "id", None),
            required_roles=roles,
        )
    return resolved
