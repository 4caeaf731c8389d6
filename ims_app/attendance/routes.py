from datetime import date, timedelta

from flask import request
from flask_login import login_required, current_user
from sqlalchemy import select, func, case

from . import attendance_bp
from .. import db, csrf_required
from ..models import Attendance, SchoolClass, Enrollment, Student, ATTENDANCE_STATUSES
from ..api_utils import api_success, api_error, get_payload, parse_date, commit_or_error
from ..decorators import role_required
from ..tenancy import owns, scope
from ..audit import log_activity

ATTENDED = ("present", "late")


def _get_class(class_id):
    school_class = db.session.get(SchoolClass, class_id)
    return school_class if owns(school_class) else None


def _day_arg(name="date"):
    return parse_date(request.args.get(name)) or date.today()


def _rate(attended, total):
    return round(attended / total * 100) if total else 0


@attendance_bp.route("/classes", methods=["GET"])
@login_required
def classes_for_marking():
    """Active classes that have at least one enrollment, with the enrollment count."""
    q = scope(
        select(SchoolClass, func.count(Enrollment.enrollment_id))
        .join(Enrollment, Enrollment.class_id_fk == SchoolClass.class_id)
        .where(SchoolClass.status == "active")
        .group_by(SchoolClass.class_id),
        SchoolClass.institute_id_fk,
    ).order_by(SchoolClass.class_name)
    items = [
        {
            "class_id": c.class_id,
            "class_code": c.class_code,
            "class_name": c.class_name,
            "subject": c.subject,
            "schedule": c.schedule,
            "enrollment_count": count,
        }
        for c, count in db.session.execute(q).all()
    ]
    return api_success({"items": items})


@attendance_bp.route("/classes/<int:class_id>/roster", methods=["GET"])
@login_required
def roster(class_id):
    if _get_class(class_id) is None:
        return api_error("not_found", "Class not found", 404)
    try:
        day = _day_arg()
    except ValueError:
        return api_error("invalid_date", "date must be YYYY-MM-DD", 400)
    students = db.session.execute(
        select(Student)
        .join(Enrollment, Enrollment.student_id_fk == Student.student_id)
        .where(Enrollment.class_id_fk == class_id)
        .where(Enrollment.status == "active")
        .order_by(Student.full_name)
    ).scalars().all()
    marked = {
        a.student_id_fk: a
        for a in db.session.execute(
            select(Attendance).filter_by(class_id_fk=class_id, date=day)
        ).scalars()
    }
    items = []
    for s in students:
        att = marked.get(s.student_id)
        items.append({
            "student_id": s.student_id,
            "student_code": s.student_code,
            "full_name": s.full_name,
            "attendance_status": att.status if att else None,
            "attendance_notes": att.notes if att else None,
        })
    return api_success({"items": items}, {"date": day.isoformat(), "class_id": class_id})


@attendance_bp.route("/mark", methods=["POST"])
@login_required
@role_required("admin", "teacher", "staff")
@csrf_required
def mark():
    """Upsert one attendance row per (class, student, date)."""
    data = get_payload()
    try:
        class_id = int(data.get("class_id") or 0)
        day = parse_date(data.get("date")) or date.today()
    except (TypeError, ValueError):
        return api_error("invalid_input", "class_id and date are required", 400)
    if _get_class(class_id) is None:
        return api_error("not_found", "Class not found", 404)
    records = data.get("records")
    if not isinstance(records, list) or not records:
        return api_error("missing_fields", "records must be a non-empty list", 400)

    existing = {
        a.student_id_fk: a
        for a in db.session.execute(select(Attendance).filter_by(class_id_fk=class_id, date=day)).scalars()
    }
    count = 0
    for rec in records:
        status = (rec.get("status") or "").strip().lower()
        if status not in ATTENDANCE_STATUSES:
            db.session.rollback()
            return api_error("invalid_status", f"Unknown attendance status: {status or '(empty)'}", 400)
        try:
            student_id = int(rec.get("student_id"))
        except (TypeError, ValueError):
            db.session.rollback()
            return api_error("invalid_input", "student_id must be an integer", 400)
        att = existing.get(student_id)
        if att is None:
            att = Attendance(class_id_fk=class_id, student_id_fk=student_id, date=day)
            db.session.add(att)
            existing[student_id] = att
        att.status = status
        att.notes = (rec.get("notes") or "").strip() or None
        att.marked_by_fk = current_user.user_id
        count += 1

    log_activity("update", "attendance", class_id, f"Marked {count} students for {day.isoformat()}")
    err = commit_or_error("marking attendance")
    if err:
        return err
    return api_success({"count": count}, {"date": day.isoformat(), "class_id": class_id})


@attendance_bp.route("/classes/<int:class_id>", methods=["GET"])
@login_required
def by_class_and_date(class_id):
    if _get_class(class_id) is None:
        return api_error("not_found", "Class not found", 404)
    try:
        day = _day_arg()
    except ValueError:
        return api_error("invalid_date", "date must be YYYY-MM-DD", 400)
    rows = db.session.execute(
        select(Attendance, Student)
        .join(Student, Student.student_id == Attendance.student_id_fk)
        .where(Attendance.class_id_fk == class_id)
        .where(Attendance.date == day)
        .order_by(Student.full_name)
    ).all()
    items = [
        {**a.to_dict(), "student": {"student_id": s.student_id, "student_code": s.student_code, "full_name": s.full_name}}
        for a, s in rows
    ]
    return api_success({"items": items}, {"date": day.isoformat()})


@attendance_bp.route("/stats", methods=["GET"])
@login_required
def stats():
    """Today's counts and the 30-day attendance rate (present and late count as attended)."""
    today = date.today()
    base = scope(
        select(Attendance.status, func.count(Attendance.attendance_id))
        .join(SchoolClass, SchoolClass.class_id == Attendance.class_id_fk)
        .group_by(Attendance.status),
        SchoolClass.institute_id_fk,
    )
    today_counts = dict(db.session.execute(base.where(Attendance.date == today)).all())
    month_counts = dict(db.session.execute(base.where(Attendance.date >= today - timedelta(days=30))).all())

    month_total = sum(month_counts.values())
    month_attended = sum(month_counts.get(s, 0) for s in ATTENDED)
    return api_success({
        "totalMarkedToday": sum(today_counts.values()),
        "presentToday": sum(today_counts.get(s, 0) for s in ATTENDED),
        "absentToday": today_counts.get("absent", 0),
        "overallAttendanceRate": _rate(month_attended, month_total),
    })


@attendance_bp.route("/classes/<int:class_id>/history", methods=["GET"])
@login_required
def class_history(class_id):
    if _get_class(class_id) is None:
        return api_error("not_found", "Class not found", 404)
    try:
        end = parse_date(request.args.get("end")) or date.today()
        start = parse_date(request.args.get("start")) or end - timedelta(days=30)
    except ValueError:
        return api_error("invalid_date", "start/end must be YYYY-MM-DD", 400)
    rows = db.session.execute(
        select(
            Attendance.date,
            func.count(Attendance.attendance_id),
            func.sum(case((Attendance.status == "present", 1), else_=0)),
            func.sum(case((Attendance.status == "absent", 1), else_=0)),
            func.sum(case((Attendance.status == "late", 1), else_=0)),
            func.sum(case((Attendance.status == "excused", 1), else_=0)),
        )
        .where(Attendance.class_id_fk == class_id)
        .where(Attendance.date >= start)
        .where(Attendance.date <= end)
        .group_by(Attendance.date)
        .order_by(Attendance.date.desc())
    ).all()
    items = []
    for day, total, present, absent, late, excused in rows:
        items.append({
            "date": day.isoformat(),
            "total": total,
            "present": present or 0,
            "absent": absent or 0,
            "late": late or 0,
            "excused": excused or 0,
            "attendance_rate": _rate((present or 0) + (late or 0), total),
        })
    return api_success({"items": items}, {"start": start.isoformat(), "end": end.isoformat()})


@attendance_bp.route("/<int:attendance_id>", methods=["DELETE"])
@login_required
@role_required("admin", "teacher", "staff")
@csrf_required
def delete(attendance_id):
    att = db.session.get(Attendance, attendance_id)
    if att is None or _get_class(att.class_id_fk) is None:
        return api_error("not_found", "Attendance record not found", 404)
    db.session.delete(att)
    log_activity("delete", "attendance", attendance_id)
    err = commit_or_error("deleting attendance")
    if err:
        return err
    return api_success({"deleted": attendance_id})
