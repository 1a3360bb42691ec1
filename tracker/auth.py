"""
Contract Tracker
Identity middleware.

The tracker sits behind an authentication proxy that has already verified
the caller and forwards the user id in the ``X-User-Id`` header.  This
module turns that header into ``g.current_user_id`` and refuses
state-changing API calls that arrive without a known user.

Provides:
    - init_auth(app): before_request hook for /api/v1/* routes
    - current_user_id(): identity accessor for blueprints
    - CSRF mitigation via Content-Type enforcement on state-changing requests

Configuration:
    API_AUTH_ENABLED — "false" lets anonymous calls through (development only);
                       the variation services then run without a capability policy.
"""

import logging
import os

from flask import current_app, g, request

from tracker.models import db
from tracker.models.auth import User
from tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"

_MUTATING_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def _is_auth_enabled() -> bool:
    """Check whether identity is enforced (env var first, then app config)."""
    env_val = os.getenv("API_AUTH_ENABLED", "")
    if env_val:
        return env_val.lower() not in ("false", "0", "no", "off")
    try:
        return str(current_app.config.get("API_AUTH_ENABLED", "true")).lower() not in ("false", "0", "no", "off")
    except RuntimeError:
        # Outside app context
        return True


def _user_id_from_header() -> int | None:
    raw = request.headers.get(USER_HEADER, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Malformed %s header: %r", USER_HEADER, raw[:16])
        return None


def current_user_id() -> int | None:
    """Return the authenticated user id for this request (None if anonymous)."""
    return getattr(g, "current_user_id", None)


def is_auth_enabled() -> bool:
    return _is_auth_enabled()


# ── CSRF protection for API ──────────────────────────────────────────────────

def _check_content_type():
    """
    For state-changing requests, require Content-Type: application/json.
    HTML forms cannot send that content type, which makes it a cheap CSRF guard.
    """
    if request.method in _MUTATING_METHODS:
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return api_error(
                E.VALIDATION_REQUIRED,
                "Content-Type must be application/json for state-changing requests",
                status=415,
            )
    return None


# ── App hook installer ───────────────────────────────────────────────────────

def init_auth(app):
    """
    Install identity middleware on the Flask app.

    - Resolves X-User-Id into g.current_user_id for API routes
    - Skips health checks and OPTIONS pre-flight requests
    """
    @app.before_request
    def _before_request_auth():
        g.current_user_id = None
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith("/api/v1/health"):
            return None
        if request.method == "OPTIONS":
            return None

        csrf_error = _check_content_type()
        if csrf_error:
            return csrf_error

        user_id = _user_id_from_header()
        if user_id is not None:
            user = db.session.get(User, user_id)
            if user is None or user.status != "active":
                logger.warning("Unknown or inactive user id=%s on %s", user_id, request.path)
                if _is_auth_enabled():
                    return api_error(E.UNAUTHENTICATED, "Unknown or inactive user")
                user_id = None
        g.current_user_id = user_id

        if _is_auth_enabled() and user_id is None and request.method in _MUTATING_METHODS:
            return api_error(E.UNAUTHENTICATED, f"Authentication required. Provide {USER_HEADER} header.")
        return None

    logger.info("Auth middleware installed (enabled=%s)", _is_auth_enabled())
