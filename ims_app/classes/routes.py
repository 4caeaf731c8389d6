from flask import request
from flask_login import login_required
from sqlalchemy import select, func

from . import classes_bp, sessions_bp
from .. import db, csrf_required
from ..models import SchoolClass, ClassSession, Enrollment, Student, User, CLASS_STATUSES, SESSION_STATUSES
from ..api_utils import (
    api_success, api_error, get_payload, apply_fields, commit_or_error,
    parse_date, parse_float, parse_int, parse_time,
)
from ..decorators import role_required
from ..tenancy import owns, scope, current_institute_id
from ..audit import log_activity

CLASS_FIELDS = (
    "class_code", "class_name", "subject", "description", "teacher_id_fk", "schedule",
    "monthly_fee", "capacity", "status", "start_date", "end_date",
)
CLASS_PARSERS = {
    "teacher_id_fk": parse_int,
    "monthly_fee": parse_float,
    "capacity": parse_int,
    "start_date": parse_date,
    "end_date": parse_date,
}
SESSION_FIELDS = ("name", "start_time", "end_time", "days_of_week", "status")
WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _get_class(class_id):
    school_class = db.session.get(SchoolClass, class_id)
    return school_class if owns(school_class) else None


def _enrollment_counts(class_ids):
    if not class_ids:
        return {}
    return dict(db.session.execute(
        select(Enrollment.class_id_fk, func.count(Enrollment.enrollment_id))
        .where(Enrollment.class_id_fk.in_(class_ids))
        .where(Enrollment.status == "active")
        .group_by(Enrollment.class_id_fk)
    ).all())


def _class_row(school_class, enrolled=None):
    row = school_class.to_dict()
    teacher = school_class.teacher
    row["teacher"] = {"user_id": teacher.user_id, "full_name": teacher.full_name} if teacher else None
    if enrolled is not None:
        row["enrolled_count"] = enrolled
    return row


def _check_teacher(teacher_id, institute_id):
    if teacher_id is None:
        return True
    teacher = db.session.get(User, teacher_id)
    if teacher is None or teacher.role != "teacher":
        return False
    return institute_id is None or teacher.institute_id_fk == institute_id


def _days(value):
    if value is None:
        return None
    parts = value if isinstance(value, list) else str(value).split(",")
    days = [p.strip().lower()[:3] for p in parts if p and p.strip()]
    bad = [d for d in days if d not in WEEKDAYS]
    if bad:
        raise ValueError(f"Unknown weekday(s): {', '.join(bad)}")
    return ",".join(days) or None


SESSION_PARSERS = {"start_time": parse_time, "end_time": parse_time, "days_of_week": _days}


# ==========================================
# CLASSES
# ==========================================

@classes_bp.route("/", methods=["GET"])
@login_required
def list_classes():
    q = scope(select(SchoolClass), SchoolClass.institute_id_fk).order_by(SchoolClass.class_name)
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.where(SchoolClass.status == status)
    classes = db.session.execute(q).scalars().all()
    counts = _enrollment_counts([c.class_id for c in classes])
    return api_success({"items": [_class_row(c, counts.get(c.class_id, 0)) for c in classes]})


@classes_bp.route("/<int:class_id>", methods=["GET"])
@login_required
def get_class(class_id):
    school_class = _get_class(class_id)
    if school_class is None:
        return api_error("not_found", "Class not found", 404)
    row = _class_row(school_class)
    enrollments = db.session.execute(
        select(Enrollment, Student)
        .join(Student, Student.student_id == Enrollment.student_id_fk)
        .where(Enrollment.class_id_fk == class_id)
        .order_by(Student.full_name)
    ).all()
    row["enrollments"] = [
        {**e.to_dict(), "student": {"student_id": s.student_id, "full_name": s.full_name, "student_code": s.student_code}}
        for e, s in enrollments
    ]
    row["enrolled_count"] = sum(1 for e, _ in enrollments if e.status == "active")
    row["sessions"] = [s.to_dict() for s in school_class.sessions]
    return api_success(row)


@classes_bp.route("/", methods=["POST"])
@login_required
@role_required("admin", "staff")
@csrf_required
def create_class():
    data = get_payload()
    for required in ("class_code", "class_name", "subject"):
        if not (str(data.get(required) or "")).strip():
            return api_error("missing_fields", "class_code, class_name and subject are required", 400)
    if (data.get("status") or "active") not in CLASS_STATUSES:
        return api_error("invalid_status", "Unknown status", 400)
    institute_id = current_institute_id()
    if institute_id is None:
        institute_id = parse_int(data.get("institute_id_fk"))
    school_class = SchoolClass(institute_id_fk=institute_id)
    try:
        apply_fields(school_class, data, CLASS_FIELDS, CLASS_PARSERS)
    except ValueError as e:
        return api_error("invalid_input", str(e), 400)
    if not _check_teacher(school_class.teacher_id_fk, institute_id):
        return api_error("invalid_teacher", "teacher_id_fk must reference a teacher of this institute", 400)
    school_class.status = school_class.status or "active"
    if school_class.monthly_fee is None:
        school_class.monthly_fee = 0.0
    db.session.add(school_class)
    err = commit_or_error("creating class")
    if err:
        return err
    log_activity("create", "class", school_class.class_id, school_class.class_name)
    db.session.commit()
    return api_success(_class_row(school_class, 0), status=201)


@classes_bp.route("/<int:class_id>", methods=["PUT", "PATCH"])
@login_required
@role_required("admin", "staff")
@csrf_required
def update_class(class_id):
    school_class = _get_class(class_id)
    if school_class is None:
        return api_error("not_found", "Class not found", 404)
    data = get_payload()
    if "status" in data and data["status"] not in CLASS_STATUSES:
        return api_error("invalid_status", "Unknown status", 400)
    try:
        changed = apply_fields(school_class, data, CLASS_FIELDS, CLASS_PARSERS)
    except ValueError as e:
        return api_error("invalid_input", str(e), 400)
    if "teacher_id_fk" in changed and not _check_teacher(school_class.teacher_id_fk, school_class.institute_id_fk):
        db.session.rollback()
        return api_error("invalid_teacher", "teacher_id_fk must reference a teacher of this institute", 400)
    log_activity("update", "class", class_id, school_class.class_name, {"fields": changed})
    err = commit_or_error("updating class")
    if err:
        return err
    return api_success(_class_row(school_class))


@classes_bp.route("/<int:class_id>", methods=["DELETE"])
@login_required
@role_required("admin")
@csrf_required
def delete_class(class_id):
    school_class = _get_class(class_id)
    if school_class is None:
        return api_error("not_found", "Class not found", 404)
    name = school_class.class_name
    db.session.delete(school_class)
    log_activity("delete", "class", class_id, name)
    err = commit_or_error("deleting class")
    if err:
        return err
    return api_success({"deleted": class_id})


@classes_bp.route("/<int:class_id>/enroll", methods=["POST"])
@login_required
@role_required("admin", "staff")
@csrf_required
def enroll(class_id):
    school_class = _get_class(class_id)
    if school_class is None:
        return api_error("not_found", "Class not found", 404)
    data = get_payload()
    try:
        student_id = parse_int(data.get("student_id"))
        custom_fee = parse_float(data.get("custom_fee"))
    except ValueError as e:
        return api_error("invalid_input", str(e), 400)
    student = db.session.get(Student, student_id) if student_id else None
    if student is None or student.institute_id_fk != school_class.institute_id_fk:
        return api_error("not_found", "Student not found", 404)

    enrollment = db.session.execute(
        select(Enrollment).filter_by(student_id_fk=student_id, class_id_fk=class_id)
    ).scalars().first()
    if enrollment is not None and enrollment.status == "active":
        return api_error("already_enrolled", "Student is already enrolled in this class", 409)
    if enrollment is None:
        enrollment = Enrollment(student_id_fk=student_id, class_id_fk=class_id)
        db.session.add(enrollment)
    enrollment.status = "active"
    enrollment.custom_fee = custom_fee
    log_activity("create", "enrollment", None, f"{student.full_name} -> {school_class.class_name}")
    err = commit_or_error("enrolling student")
    if err:
        return err
    return api_success(enrollment.to_dict(), status=201)


@classes_bp.route("/enrollments/<int:enrollment_id>/unenroll", methods=["POST"])
@login_required
@role_required("admin", "staff")
@csrf_required
def unenroll(enrollment_id):
    enrollment = db.session.get(Enrollment, enrollment_id)
    if enrollment is None or not owns(enrollment.school_class):
        return api_error("not_found", "Enrollment not found", 404)
    enrollment.status = "dropped"
    log_activity("update", "enrollment", enrollment_id, "Dropped")
    err = commit_or_error("unenrolling student")
    if err:
        return err
    return api_success(enrollment.to_dict())


@classes_bp.route("/<int:class_id>/sessions", methods=["GET"])
@login_required
def class_sessions(class_id):
    school_class = _get_class(class_id)
    if school_class is None:
        return api_error("not_found", "Class not found", 404)
    sessions = db.session.execute(
        select(ClassSession).where(ClassSession.class_id_fk == class_id).order_by(ClassSession.start_time)
    ).scalars().all()
    return api_success({"items": [s.to_dict() for s in sessions]})


# ==========================================
# SESSIONS
# ==========================================

def _get_session(session_id):
    class_session = db.session.get(ClassSession, session_id)
    if class_session is None or not owns(class_session.school_class):
        return None
    return class_session


@sessions_bp.route("/", methods=["GET"])
@login_required
def list_sessions():
    q = scope(
        select(ClassSession, SchoolClass)
        .join(SchoolClass, SchoolClass.class_id == ClassSession.class_id_fk),
        SchoolClass.institute_id_fk,
    ).order_by(SchoolClass.class_name, ClassSession.start_time)
    items = []
    for s, c in db.session.execute(q).all():
        row = s.to_dict()
        row["class"] = {"class_id": c.class_id, "class_name": c.class_name, "class_code": c.class_code}
        items.append(row)
    return api_success({"items": items})


@sessions_bp.route("/<int:session_id>", methods=["GET"])
@login_required
def get_session(session_id):
    class_session = _get_session(session_id)
    if class_session is None:
        return api_error("not_found", "Session not found", 404)
    return api_success(class_session.to_dict())


@sessions_bp.route("/", methods=["POST"])
@login_required
@role_required("admin", "staff")
@csrf_required
def create_session():
    data = get_payload()
    school_class = _get_class(parse_int(data.get("class_id_fk")) or 0)
    if school_class is None:
        return api_error("not_found", "Class not found", 404)
    if (data.get("status") or "active") not in SESSION_STATUSES:
        return api_error("invalid_status", "Unknown status", 400)
    class_session = ClassSession(class_id_fk=school_class.class_id)
    try:
        apply_fields(class_session, data, SESSION_FIELDS, SESSION_PARSERS)
    except ValueError as e:
        return api_error("invalid_input", str(e), 400)
    if not class_session.name or not class_session.start_time or not class_session.end_time:
        return api_error("missing_fields", "name, start_time and end_time are required", 400)
    if class_session.end_time <= class_session.start_time:
        return api_error("invalid_time", "end_time must be after start_time", 400)
    class_session.status = class_session.status or "active"
    db.session.add(class_session)
    err = commit_or_error("creating session")
    if err:
        return err
    return api_success(class_session.to_dict(), status=201)


@sessions_bp.route("/<int:session_id>", methods=["PUT", "PATCH"])
@login_required
@role_required("admin", "staff")
@csrf_required
def update_session(session_id):
    class_session = _get_session(session_id)
    if class_session is None:
        return api_error("not_found", "Session not found", 404)
    data = get_payload()
    if "status" in data and data["status"] not in SESSION_STATUSES:
        return api_error("invalid_status", "Unknown status", 400)
    try:
        apply_fields(class_session, data, SESSION_FIELDS, SESSION_PARSERS)
    except ValueError as e:
        return api_error("invalid_input", str(e), 400)
    if class_session.end_time <= class_session.start_time:
        db.session.rollback()
        return api_error("invalid_time", "end_time must be after start_time", 400)
    err = commit_or_error("updating session")
    if err:
        return err
    return api_success(class_session.to_dict())


@sessions_bp.route("/<int:session_id>", methods=["DELETE"])
@login_required
@role_required("admin", "staff")
@csrf_required
def delete_session(session_id):
    class_session = _get_session(session_id)
    if class_session is None:
        return api_error("not_found", "Session not found", 404)
    db.session.delete(class_session)
    err = commit_or_error("deleting session")
    if err:
        return err
    return api_success({"deleted": session_id})
