"""Teacher accounts.

Creating, editing and deleting accounts goes through the privileged
service session, the same as the fee jobs; a deployment without
SERVICE_DATABASE_URL can list teachers but not manage them.
"""
import secrets

from flask import current_app
from flask_login import login_required
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import generate_password_hash

from . import teachers_bp
from .. import db, csrf_required
from ..models import User, SchoolClass
from ..api_utils import api_success, api_error, get_payload
from ..decorators import admin_required
from ..tenancy import owns, scope, current_institute_id
from ..audit import log_activity
from ..service_db import service_session, ConfigurationError
from ..students.services import normalize_class_ids

PROFILE_FIELDS = ("full_name", "email", "phone")


def _teacher_row(user, classes):
    row = user.to_dict()
    row["classes"] = [{"class_id": c.class_id, "class_name": c.class_name, "class_code": c.class_code} for c in classes]
    return row


def _get_teacher(user_id):
    user = db.session.get(User, user_id)
    if user is None or user.role != "teacher" or not owns(user):
        return None
    return user


def _assign_classes(session, teacher_id, class_ids, institute_id):
    """Point exactly ``class_ids`` at this teacher; classes dropped from the list lose their teacher."""
    current = set(session.execute(
        select(SchoolClass.class_id).where(SchoolClass.teacher_id_fk == teacher_id)
    ).scalars().all())
    remove_ids = current - class_ids
    add_ids = class_ids - current
    if remove_ids:
        session.execute(
            update(SchoolClass).where(SchoolClass.class_id.in_(remove_ids)).values(teacher_id_fk=None)
        )
    if add_ids:
        q = update(SchoolClass).where(SchoolClass.class_id.in_(add_ids))
        if institute_id is not None:
            q = q.where(SchoolClass.institute_id_fk == institute_id)
        session.execute(q.values(teacher_id_fk=teacher_id))
    return sorted(add_ids), sorted(remove_ids)


def _service_failure(action, exc):
    if isinstance(exc, ConfigurationError):
        current_app.logger.error("Cannot %s: %s", action, exc)
        return api_error("configuration_error", f"Server configuration error: {exc}", 500)
    if isinstance(exc, IntegrityError):
        current_app.logger.warning("Integrity error while trying to %s: %s", action, exc.orig)
        return api_error("integrity_error", str(exc.orig), 400)
    current_app.logger.exception("Database error while trying to %s", action)
    return api_error("database_error", str(exc), 500)


@teachers_bp.route("/", methods=["GET"])
@login_required
def list_teachers():
    q = scope(select(User).where(User.role == "teacher"), User.institute_id_fk).order_by(User.full_name)
    teachers = db.session.execute(q).scalars().all()
    return api_success({"items": [_teacher_row(t, t.classes) for t in teachers]})


@teachers_bp.route("/<int:user_id>", methods=["GET"])
@login_required
def get_teacher(user_id):
    teacher = _get_teacher(user_id)
    if teacher is None:
        return api_error("not_found", "Teacher not found", 404)
    return api_success(_teacher_row(teacher, teacher.classes))


@teachers_bp.route("/", methods=["POST"])
@login_required
@admin_required
@csrf_required
def create_teacher():
    data = get_payload()
    email = (data.get("email") or "").strip().lower()
    full_name = (data.get("full_name") or "").strip()
    if not email or not full_name:
        return api_error("missing_fields", "full_name and email are required", 400)
    try:
        class_ids = normalize_class_ids(data.get("class_ids")) or set()
    except (TypeError, ValueError):
        return api_error("invalid_input", "class_ids must be a list of integers", 400)

    institute_id = current_institute_id()
    temp_password = secrets.token_urlsafe(9)
    try:
        with service_session() as session:
            teacher = User(
                institute_id_fk=institute_id,
                email=email,
                full_name=full_name,
                phone=(data.get("phone") or "").strip() or None,
                role="teacher",
                password_hash=generate_password_hash(temp_password),
                must_change_password=True,
            )
            session.add(teacher)
            session.flush()
            teacher_id = teacher.user_id
            if class_ids:
                _assign_classes(session, teacher_id, class_ids, institute_id)
    except (ConfigurationError, SQLAlchemyError) as e:
        return _service_failure("create teacher", e)

    log_activity("create", "teacher", teacher_id, full_name)
    db.session.commit()
    teacher = db.session.get(User, teacher_id)
    row = _teacher_row(teacher, teacher.classes)
    # Shown once so the admin can hand it over; the user must change it on first login
    row["temporary_password"] = temp_password
    return api_success(row, status=201)


@teachers_bp.route("/<int:user_id>", methods=["PUT", "PATCH"])
@login_required
@admin_required
@csrf_required
def update_teacher(user_id):
    teacher = _get_teacher(user_id)
    if teacher is None:
        return api_error("not_found", "Teacher not found", 404)
    data = get_payload()
    changes = {}
    for name in PROFILE_FIELDS:
        value = (data.get(name) or "").strip()
        if value:
            changes[name] = value.lower() if name == "email" else value
    try:
        class_ids = normalize_class_ids(data.get("class_ids")) if "class_ids" in data else None
    except (TypeError, ValueError):
        return api_error("invalid_input", "class_ids must be a list of integers", 400)

    added = removed = []
    try:
        with service_session() as session:
            if changes:
                session.execute(update(User).where(User.user_id == user_id).values(**changes))
            if class_ids is not None:
                added, removed = _assign_classes(session, user_id, class_ids, teacher.institute_id_fk)
    except (ConfigurationError, SQLAlchemyError) as e:
        return _service_failure("update teacher", e)

    db.session.expire_all()
    log_activity("update", "teacher", user_id, teacher.full_name,
                 {"fields": sorted(changes), "assigned": added, "unassigned": removed})
    db.session.commit()
    teacher = db.session.get(User, user_id)
    return api_success(_teacher_row(teacher, teacher.classes))


@teachers_bp.route("/<int:user_id>", methods=["DELETE"])
@login_required
@admin_required
@csrf_required
def delete_teacher(user_id):
    teacher = _get_teacher(user_id)
    if teacher is None:
        return api_error("not_found", "Teacher not found", 404)
    name = teacher.full_name
    try:
        with service_session() as session:
            session.execute(update(SchoolClass).where(SchoolClass.teacher_id_fk == user_id).values(teacher_id_fk=None))
            doomed = session.get(User, user_id)
            if doomed is not None:
                session.delete(doomed)
    except (ConfigurationError, SQLAlchemyError) as e:
        return _service_failure("delete teacher", e)

    db.session.expire_all()
    log_activity("delete", "teacher", user_id, name)
    db.session.commit()
    return api_success({"deleted": user_id})


@teachers_bp.route("/count", methods=["GET"])
@login_required
def count_teachers():
    q = scope(select(func.count(User.user_id)).where(User.role == "teacher"), User.institute_id_fk)
    return api_success({"count": db.session.scalar(q) or 0})
