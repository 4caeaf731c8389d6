from flask import request
from flask_login import login_required, current_user
from sqlalchemy import select, func

from . import assessments_bp
from .. import db, csrf_required
from ..models import Assessment, Grade, SchoolClass, Enrollment, Student, ASSESSMENT_TYPES, utc_now
from ..api_utils import (
    api_success, api_error, get_payload, apply_fields, commit_or_error,
    parse_date, parse_float, parse_int,
)
from ..decorators import role_required
from ..tenancy import owns, scope
from ..audit import log_activity

FIELDS = ("title", "description", "assessment_type", "max_score", "weight", "date")
PARSERS = {"max_score": parse_float, "weight": parse_float, "date": parse_date}


def _get_assessment(assessment_id):
    assessment = db.session.get(Assessment, assessment_id)
    if assessment is None or not owns(assessment.school_class):
        return None
    return assessment


def _row(assessment):
    out = assessment.to_dict()
    c = assessment.school_class
    out["class"] = {"class_id": c.class_id, "class_name": c.class_name, "class_code": c.class_code}
    return out


@assessments_bp.route("/", methods=["GET"])
@login_required
def list_assessments():
    q = scope(
        select(Assessment).join(SchoolClass, SchoolClass.class_id == Assessment.class_id_fk),
        SchoolClass.institute_id_fk,
    ).order_by(Assessment.date.desc(), Assessment.assessment_id.desc())
    class_id = request.args.get("class_id", type=int)
    if class_id:
        q = q.where(Assessment.class_id_fk == class_id)
    return api_success({"items": [_row(a) for a in db.session.execute(q).scalars()]})


@assessments_bp.route("/<int:assessment_id>", methods=["GET"])
@login_required
def get_assessment(assessment_id):
    assessment = _get_assessment(assessment_id)
    if assessment is None:
        return api_error("not_found", "Assessment not found", 404)
    return api_success(_row(assessment))


@assessments_bp.route("/", methods=["POST"])
@login_required
@role_required("admin", "teacher", "staff")
@csrf_required
def create_assessment():
    data = get_payload()
    school_class = db.session.get(SchoolClass, parse_int(data.get("class_id_fk")) or 0)
    if not owns(school_class):
        return api_error("not_found", "Class not found", 404)
    if (data.get("assessment_type") or "") not in ASSESSMENT_TYPES:
        return api_error("invalid_type", f"assessment_type must be one of {', '.join(ASSESSMENT_TYPES)}", 400)
    assessment = Assessment(class_id_fk=school_class.class_id, created_by_fk=current_user.user_id)
    try:
        apply_fields(assessment, data, FIELDS, PARSERS)
    except ValueError as e:
        return api_error("invalid_input", str(e), 400)
    if not assessment.title or not assessment.date:
        return api_error("missing_fields", "title and date are required", 400)
    if assessment.max_score is None:
        assessment.max_score = 100.0
    if assessment.max_score <= 0:
        return api_error("invalid_input", "max_score must be positive", 400)
    if assessment.weight is None:
        assessment.weight = 1.0
    db.session.add(assessment)
    err = commit_or_error("creating assessment")
    if err:
        return err
    log_activity("create", "assessment", assessment.assessment_id, assessment.title)
    db.session.commit()
    return api_success(_row(assessment), status=201)


@assessments_bp.route("/<int:assessment_id>", methods=["PUT", "PATCH"])
@login_required
@role_required("admin", "teacher", "staff")
@csrf_required
def update_assessment(assessment_id):
    assessment = _get_assessment(assessment_id)
    if assessment is None:
        return api_error("not_found", "Assessment not found", 404)
    data = get_payload()
    if "assessment_type" in data and data["assessment_type"] not in ASSESSMENT_TYPES:
        return api_error("invalid_type", f"assessment_type must be one of {', '.join(ASSESSMENT_TYPES)}", 400)
    try:
        changed = apply_fields(assessment, data, FIELDS, PARSERS)
    except ValueError as e:
        return api_error("invalid_input", str(e), 400)
    log_activity("update", "assessment", assessment_id, assessment.title, {"fields": changed})
    err = commit_or_error("updating assessment")
    if err:
        return err
    return api_success(_row(assessment))


@assessments_bp.route("/<int:assessment_id>", methods=["DELETE"])
@login_required
@role_required("admin", "teacher", "staff")
@csrf_required
def delete_assessment(assessment_id):
    assessment = _get_assessment(assessment_id)
    if assessment is None:
        return api_error("not_found", "Assessment not found", 404)
    title = assessment.title
    db.session.delete(assessment)
    log_activity("delete", "assessment", assessment_id, title)
    err = commit_or_error("deleting assessment")
    if err:
        return err
    return api_success({"deleted": assessment_id})


@assessments_bp.route("/<int:assessment_id>/roster", methods=["GET"])
@login_required
def grading_roster(assessment_id):
    """Actively enrolled students with any grade already recorded."""
    assessment = _get_assessment(assessment_id)
    if assessment is None:
        return api_error("not_found", "Assessment not found", 404)
    students = db.session.execute(
        select(Student)
        .join(Enrollment, Enrollment.student_id_fk == Student.student_id)
        .where(Enrollment.class_id_fk == assessment.class_id_fk)
        .where(Enrollment.status == "active")
        .order_by(Student.full_name)
    ).scalars().all()
    grades = {g.student_id_fk: g for g in assessment.grades}
    items = []
    for s in students:
        g = grades.get(s.student_id)
        items.append({
            "student_id": s.student_id,
            "student_code": s.student_code,
            "full_name": s.full_name,
            "current_score": g.score if g else None,
            "current_remarks": g.remarks if g else None,
        })
    return api_success({"items": items}, {"max_score": assessment.max_score})


@assessments_bp.route("/<int:assessment_id>/grades", methods=["POST"])
@login_required
@role_required("admin", "teacher", "staff")
@csrf_required
def save_grades(assessment_id):
    """Bulk upsert on (assessment, student). Entries with neither score nor remarks are ignored."""
    assessment = _get_assessment(assessment_id)
    if assessment is None:
        return api_error("not_found", "Assessment not found", 404)
    entries = get_payload().get("grades")
    if not isinstance(entries, list):
        return api_error("missing_fields", "grades must be a list", 400)

    existing = {g.student_id_fk: g for g in assessment.grades}
    now = utc_now()
    count = 0
    for entry in entries:
        try:
            student_id = int(entry.get("student_id"))
            score = parse_float(entry.get("score"))
        except (TypeError, ValueError):
            db.session.rollback()
            return api_error("invalid_input", "student_id must be an integer and score a number", 400)
        remarks = (entry.get("remarks") or "").strip() or None
        if score is None and not remarks:
            continue
        if score is not None and not (0 <= score <= assessment.max_score):
            db.session.rollback()
            return api_error("invalid_score", f"score must be between 0 and {assessment.max_score:g}", 400)
        grade = existing.get(student_id)
        if grade is None:
            grade = Grade(assessment_id_fk=assessment_id, student_id_fk=student_id)
            db.session.add(grade)
            existing[student_id] = grade
        grade.score = score
        grade.remarks = remarks
        grade.graded_by_fk = current_user.user_id
        grade.graded_at = now
        count += 1

    if count:
        log_activity("update", "assessment", assessment_id, f"Saved {count} grades")
    err = commit_or_error("saving grades")
    if err:
        return err
    return api_success({"count": count})


@assessments_bp.route("/<int:assessment_id>/grades", methods=["GET"])
@login_required
def list_grades(assessment_id):
    assessment = _get_assessment(assessment_id)
    if assessment is None:
        return api_error("not_found", "Assessment not found", 404)
    rows = db.session.execute(
        select(Grade, Student)
        .join(Student, Student.student_id == Grade.student_id_fk)
        .where(Grade.assessment_id_fk == assessment_id)
        .order_by(Student.full_name)
    ).all()
    items = [
        {**g.to_dict(), "student": {"student_id": s.student_id, "student_code": s.student_code, "full_name": s.full_name}}
        for g, s in rows
    ]
    return api_success({"items": items})


@assessments_bp.route("/classes/<int:class_id>/summary", methods=["GET"])
@login_required
def class_summary(class_id):
    """Per-assessment grade statistics for a class, newest first."""
    school_class = db.session.get(SchoolClass, class_id)
    if not owns(school_class):
        return api_error("not_found", "Class not found", 404)
    rows = db.session.execute(
        select(
            Assessment,
            func.count(Grade.grade_id),
            func.avg(Grade.score),
            func.max(Grade.score),
            func.min(Grade.score),
        )
        .outerjoin(Grade, Grade.assessment_id_fk == Assessment.assessment_id)
        .where(Assessment.class_id_fk == class_id)
        .group_by(Assessment.assessment_id)
        .order_by(Assessment.date.desc())
    ).all()
    items = []
    for a, graded, avg, high, low in rows:
        items.append({
            "assessment_id": a.assessment_id,
            "title": a.title,
            "assessment_type": a.assessment_type,
            "date": a.date.isoformat(),
            "max_score": a.max_score,
            "graded_count": graded,
            "average_score": round(avg, 2) if avg is not None else None,
            "average_percentage": round(avg / a.max_score * 100, 1) if avg is not None and a.max_score else None,
            "highest_score": high,
            "lowest_score": low,
        })
    return api_success({"items": items})
