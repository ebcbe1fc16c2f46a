# Overview: Request decorators for API routes (pre-authenticated actor identity).

from functools import wraps
from flask import request, jsonify, g

from .identity import Actor, VALID_ROLES


def require_actor(roles: list[str] | None = None):
    """
    Require an already-authenticated actor on the request.

    Identity is established upstream; the gateway forwards it as
    X-Actor-Id / X-Actor-Role headers. Sets g.actor.

    Returns 401 when the actor id is missing, 403 when the role is unknown
    or not in roles.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            actor_id = (request.headers.get("X-Actor-Id") or "").strip()
            role = (request.headers.get("X-Actor-Role") or "").strip().upper()

            if not actor_id:
                return jsonify({"error": "Authentication required"}), 401
            if role not in VALID_ROLES:
                return jsonify({"error": "Unknown actor role"}), 403
            if roles is not None and role not in roles:
                return jsonify({"error": "Permission denied", "required_roles": roles}), 403

            g.actor = Actor(id=actor_id, role=role)
            return f(*args, **kwargs)

        return decorated_function
    return decorator
