from flask import request, current_app
from flask_login import login_required
from sqlalchemy import select, or_

from . import students_bp
from . import services
from .. import db, csrf_required
from ..models import Student, SchoolClass, STUDENT_STATUSES
from ..api_utils import api_success, api_error, get_payload, apply_fields, commit_or_error, parse_date, parse_int
from ..decorators import role_required
from ..tenancy import owns, scope, current_institute_id
from ..audit import log_activity
from ..payments.services import payment_summary


def _get_student(student_id):
    student = db.session.get(Student, student_id)
    return student if owns(student) else None


def _checked_class_ids(raw, institute_id):
    """Parse class_ids and make sure every class belongs to the student's institute."""
    class_ids = services.normalize_class_ids(raw)
    if not class_ids:
        return class_ids
    q = select(SchoolClass.class_id).where(SchoolClass.class_id.in_(class_ids))
    if institute_id is not None:
        q = q.where(SchoolClass.institute_id_fk == institute_id)
    found = set(db.session.execute(q).scalars().all())
    missing = class_ids - found
    if missing:
        raise ValueError(f"Unknown class ids: {', '.join(str(m) for m in sorted(missing))}")
    return class_ids


@students_bp.route("/", methods=["GET"])
@login_required
def list_students():
    q = scope(select(Student), Student.institute_id_fk).order_by(Student.created_at.desc(), Student.student_id.desc())
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.where(Student.status == status)
    term = (request.args.get("q") or "").strip()
    if term:
        like = f"%{term}%"
        q = q.where(or_(Student.full_name.ilike(like), Student.student_code.ilike(like), Student.email.ilike(like)))
    items = [s.to_dict() for s in db.session.execute(q).scalars()]
    return api_success({"items": items}, {"status": status or None, "count": len(items)})


@students_bp.route("/<int:student_id>", methods=["GET"])
@login_required
def get_student(student_id):
    student = _get_student(student_id)
    if student is None:
        return api_error("not_found", "Student not found", 404)
    return api_success(services.student_detail(student))


@students_bp.route("/", methods=["POST"])
@login_required
@role_required("admin", "staff")
@csrf_required
def create_student():
    data = get_payload()
    if not (data.get("student_code") or "").strip() or not (data.get("full_name") or "").strip():
        return api_error("missing_fields", "student_code and full_name are required", 400)
    if (data.get("status") or "active") not in STUDENT_STATUSES:
        return api_error("invalid_status", "Unknown status", 400)

    institute_id = current_institute_id()
    if institute_id is None:
        institute_id = parse_int(data.get("institute_id_fk"))
    try:
        class_ids = _checked_class_ids(data.get("class_ids"), institute_id)
        student = Student(institute_id_fk=institute_id)
        apply_fields(student, data, services.STUDENT_FIELDS, services.STUDENT_PARSERS)
    except ValueError as e:
        return api_error("invalid_input", str(e), 400)
    student.status = student.status or "active"
    db.session.add(student)
    if class_ids:
        services.sync_enrollments(student, class_ids)
    err = commit_or_error("creating student")
    if err:
        return err
    log_activity("create", "student", student.student_id, student.full_name)
    db.session.commit()
    return api_success(services.student_detail(student), status=201)


@students_bp.route("/<int:student_id>", methods=["PUT", "PATCH"])
@login_required
@role_required("admin", "staff")
@csrf_required
def update_student(student_id):
    student = _get_student(student_id)
    if student is None:
        return api_error("not_found", "Student not found", 404)
    data = get_payload()
    if "status" in data and data["status"] not in STUDENT_STATUSES:
        return api_error("invalid_status", "Unknown status", 400)
    try:
        class_ids = _checked_class_ids(data.get("class_ids"), student.institute_id_fk) if "class_ids" in data else None
        changed = apply_fields(student, data, services.STUDENT_FIELDS, services.STUDENT_PARSERS)
    except ValueError as e:
        return api_error("invalid_input", str(e), 400)

    meta = {"fields": changed}
    # An explicit empty list clears every enrollment
    if "class_ids" in data:
        added, dropped = services.sync_enrollments(student, class_ids or set())
        meta.update({"enrolled": added, "dropped": dropped})
    log_activity("update", "student", student.student_id, student.full_name, meta)
    err = commit_or_error("updating student")
    if err:
        return err
    return api_success(services.student_detail(student))


@students_bp.route("/<int:student_id>", methods=["DELETE"])
@login_required
@role_required("admin")
@csrf_required
def delete_student(student_id):
    student = _get_student(student_id)
    if student is None:
        return api_error("not_found", "Student not found", 404)
    name = student.full_name
    db.session.delete(student)
    log_activity("delete", "student", student_id, name)
    err = commit_or_error("deleting student")
    if err:
        return err
    return api_success({"deleted": student_id})


@students_bp.route("/bulk", methods=["POST"])
@login_required
@role_required("admin", "staff")
@csrf_required
def bulk_create():
    data = get_payload()
    rows = data.get("students") if isinstance(data, dict) else None
    if not isinstance(rows, list) or not rows:
        return api_error("missing_fields", "students must be a non-empty list", 400)
    institute_id = current_institute_id()
    if institute_id is None:
        institute_id = parse_int(data.get("institute_id_fk"))
    result = services.bulk_create_students(rows, institute_id)
    current_app.logger.info("Bulk student import: %s imported, %s failed", result["imported"], result["failed"])
    if result["imported"]:
        log_activity("create", "student", None, f"Bulk import of {result['imported']} students")
        db.session.commit()
    return api_success(result, {"all_imported": not result["errors"]})


@students_bp.route("/search", methods=["GET"])
@login_required
def search():
    term = (request.args.get("q") or "").strip()
    if not term:
        return api_success({"items": []})
    try:
        limit = min(max(int(request.args.get("limit", 10)), 1), 50)
    except ValueError:
        limit = 10
    return api_success({"items": services.search_students(term, limit)})


@students_bp.route("/barcode/<code>", methods=["GET"])
@login_required
def by_barcode(code):
    """Scanner lookup: matches the barcode or, failing that, the student code."""
    q = scope(
        select(Student).where(or_(Student.barcode == code, Student.student_code == code)),
        Student.institute_id_fk,
    )
    student = db.session.execute(q).scalars().first()
    if student is None:
        return api_error("not_found", "Student not found", 404)
    return api_success(services.student_detail(student))


@students_bp.route("/<int:student_id>/payment-summary", methods=["GET"])
@login_required
def student_payment_summary(student_id):
    if _get_student(student_id) is None:
        return api_error("not_found", "Student not found", 404)
    return api_success(payment_summary(student_id))


@students_bp.route("/<int:student_id>/attendance", methods=["GET"])
@login_required
def student_attendance(student_id):
    if _get_student(student_id) is None:
        return api_error("not_found", "Student not found", 404)
    try:
        start = parse_date(request.args.get("start"))
        end = parse_date(request.args.get("end"))
    except ValueError:
        return api_error("invalid_date", "start/end must be YYYY-MM-DD", 400)
    return api_success(services.attendance_history(student_id, start, end))


@students_bp.route("/<int:student_id>/report-card", methods=["GET"])
@login_required
def student_report_card(student_id):
    student = _get_student(student_id)
    if student is None:
        return api_error("not_found", "Student not found", 404)
    return api_success(services.report_card(student))


@students_bp.route("/<int:student_id>/tutorials", methods=["GET"])
@login_required
def student_tutorials(student_id):
    if _get_student(student_id) is None:
        return api_error("not_found", "Student not found", 404)
    return api_success(services.tutorial_progress(student_id))
