from flask import current_app, session
from flask_login import login_user, logout_user, login_required, current_user
from sqlalchemy import select, func
from werkzeug.security import check_password_hash, generate_password_hash

from . import auth_bp
from .. import db, limiter, issue_csrf_token, csrf_required
from ..models import User, USER_ROLES
from ..api_utils import api_success, api_error, get_payload, commit_or_error
from ..decorators import admin_required
from ..audit import log_activity

MIN_PASSWORD_LENGTH = 8


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("5 per minute", methods=["POST"])
def login():
    data = get_payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return api_error("missing_credentials", "Email and password are required.", 400)

    user = db.session.execute(
        select(User).where(func.lower(User.email) == email)
    ).scalars().first()
    if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
        current_app.logger.info("Failed login for %s", email)
        return api_error("invalid_credentials", "Invalid credentials.", 401)
    if not user.is_active:
        return api_error("inactive", "Account is disabled.", 403)

    login_user(user)
    session.permanent = True
    token = issue_csrf_token(force=True)
    return api_success({"user": user.to_dict(), "csrf_token": token})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    session.pop("csrf_token", None)
    session.pop("csrf_token_issued_at", None)
    return api_success({"logged_out": True})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return api_success({"user": current_user.to_dict()})


@auth_bp.route("/me", methods=["PUT", "PATCH"])
@login_required
@csrf_required
def update_profile():
    data = get_payload()
    full_name = (data.get("full_name") or "").strip()
    if "full_name" in data and not full_name:
        return api_error("missing_fields", "full_name cannot be empty", 400)
    if full_name:
        current_user.full_name = full_name
    if "phone" in data:
        current_user.phone = (data.get("phone") or "").strip() or None
    log_activity("update", "user", current_user.user_id, "Updated profile")
    err = commit_or_error("updating profile")
    if err:
        return err
    return api_success({"user": current_user.to_dict()})


@auth_bp.route("/csrf-token", methods=["GET"])
@login_required
def csrf_token():
    return api_success({"csrf_token": issue_csrf_token()})


@auth_bp.route("/change-password", methods=["POST"])
@login_required
@csrf_required
def change_password():
    data = get_payload()
    current = data.get("current_password") or ""
    new = data.get("new_password") or ""
    if not current_user.password_hash or not check_password_hash(current_user.password_hash, current):
        return api_error("invalid_credentials", "Current password is incorrect.", 400)
    if len(new) < MIN_PASSWORD_LENGTH:
        return api_error("weak_password", f"Password must be at least {MIN_PASSWORD_LENGTH} characters.", 400)
    current_user.password_hash = generate_password_hash(new)
    current_user.must_change_password = False
    log_activity("update", "user", current_user.user_id, "Changed password")
    err = commit_or_error("changing password")
    if err:
        return err
    return api_success({"changed": True})


@auth_bp.route("/users/<int:user_id>/role", methods=["POST"])
@login_required
@admin_required
@csrf_required
def change_role(user_id):
    """Admin-only role change, recorded in the activity log."""
    user = db.session.get(User, user_id)
    if user is None:
        return api_error("not_found", "User not found", 404)
    # Institute admins can only manage their own institute's users
    if current_user.institute_id_fk is not None and user.institute_id_fk != current_user.institute_id_fk:
        return api_error("not_found", "User not found", 404)

    role = (get_payload().get("role") or "").strip().lower()
    if role not in USER_ROLES:
        return api_error("invalid_role", f"role must be one of {', '.join(USER_ROLES)}", 400)
    if user.user_id == current_user.user_id and role != "admin":
        return api_error("forbidden", "Admins cannot demote themselves.", 403)

    previous = user.role
    user.role = role
    log_activity("update", "user", user.user_id, f"Role changed from {previous} to {role}",
                 {"from": previous, "to": role})
    err = commit_or_error("changing role")
    if err:
        return err
    current_app.logger.info("User %s role %s -> %s by %s", user.user_id, previous, role, current_user.user_id)
    return api_success({"user": user.to_dict()})
