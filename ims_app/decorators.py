import secrets
from functools import wraps

from flask import current_app, jsonify, request
from flask_login import current_user

from .api_utils import api_error


def role_required(*roles):
    """
    Decorator to ensure the current user has one of the allowed roles.
    Must be placed *after* @login_required.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return current_app.login_manager.unauthorized()

            user_role = (getattr(current_user, "role", "") or "").strip().lower()
            allowed = {r.strip().lower() for r in roles}

            if user_role not in allowed:
                return api_error("forbidden", "You do not have permission to access this resource.", 403)

            return func(*args, **kwargs)
        return wrapper
    return decorator


admin_required = role_required("admin")


def cron_secret_required(func):
    """Guard for scheduler-only endpoints: ``Authorization: Bearer <CRON_SECRET>``."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("CRON_SECRET") or ""
        header = request.headers.get("Authorization") or ""
        supplied = header[len("Bearer "):] if header.startswith("Bearer ") else ""
        # An unset secret never authorizes anything
        if not expected or not secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
            current_app.logger.warning("Rejected cron call to %s", request.path)
            return jsonify({"error": "Unauthorized"}), 401
        return func(*args, **kwargs)
    return wrapper
