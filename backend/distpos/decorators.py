# Overview: Request identity and capability decorators for API routes.

from functools import wraps
from flask import current_app, g, jsonify, request

from .services import identity_service


def require_identity(f):
    """
    Resolve who is calling and from which terminal session.

    Sets the following Flask g attributes:
    - g.current_user: the active User named by the X-User-Id header
    - g.identity: Identity(user_id, display name, session id)

    The session id is the terminal's own (generated at process start) unless
    the caller sends X-Session-Id, which lets one backend serve several
    terminals.

    Returns 401 if the header is missing, malformed, or names an inactive user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw_user_id = request.headers.get("X-User-Id", "").strip()
        if not raw_user_id.isdigit():
            return jsonify({"error": "Authentication required"}), 401

        user = identity_service.get_active_user(int(raw_user_id))
        if user is None:
            return jsonify({"error": "Unknown or inactive user"}), 401

        session_id = request.headers.get("X-Session-Id") or current_app.config["TERMINAL_SESSION_ID"]

        g.current_user = user
        g.identity = identity_service.identity_for(user, session_id)
        return f(*args, **kwargs)

    return decorated_function


def require_capability(capability: str):
    """Require a capability; @require_identity must run first."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not hasattr(g, "identity"):
                return jsonify({"error": "Authentication required"}), 401

            if not identity_service.has_capability(g.identity.user_id, capability):
                return jsonify({
                    "error": "Permission denied",
                    "required_capability": capability,
                    "message": f"Missing required capability: {capability}",
                }), 403

            return f(*args, **kwargs)
        return decorated_function
    return decorator
