# Overview: Request identity decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

"""
Authentication lives upstream (gateway / session layer). By the time a
request reaches this service the caller is identified by two headers:

- X-Actor-Id: opaque user reference, recorded on every document and ledger row
- X-Actor-Role: "cashier", "manager" or "admin"
"""

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"

KNOWN_ROLES = {"cashier", "manager", "admin"}


def _is_identified() -> bool:
    return hasattr(g, "actor_id") and hasattr(g, "actor_role")


def require_actor(f):
    """
    Require an identified caller.

    Sets:
    - g.actor_id: the X-Actor-Id header value
    - g.actor_role: the X-Actor-Role header value (defaults to "cashier")

    Returns 401 when the actor header is missing and 403 for unknown roles.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip()
        if not actor_id:
            return jsonify({"error": "Actor identity required", "retry_safe": True}), 401

        role = (request.headers.get(ACTOR_ROLE_HEADER) or "cashier").strip().lower()
        if role not in KNOWN_ROLES:
            return jsonify({"error": f"Unknown role: {role}", "retry_safe": True}), 403

        g.actor_id = actor_id
        g.actor_role = role
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require one of the given roles. Must be stacked under @require_actor.
    """
    allowed = {r.lower() for r in roles}

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_identified():
                return jsonify({"error": "Actor identity required", "retry_safe": True}), 401

            if g.actor_role not in allowed:
                return jsonify({
                    "error": "Permission denied",
                    "required_role": sorted(allowed),
                    "retry_safe": True,
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
