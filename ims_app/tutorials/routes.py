from flask_login import login_required, current_user
from sqlalchemy import select, func, or_, case

from . import tutorials_bp
from .. import db, csrf_required
from ..models import (
    Tutorial, TutorialProgress, SchoolClass, Enrollment, Student,
    CONTENT_TYPES, PROGRESS_STATUSES, utc_now,
)
from ..api_utils import api_success, api_error, get_payload, apply_fields, commit_or_error, parse_bool, parse_int
from ..decorators import role_required
from ..tenancy import owns, current_institute_id
from ..audit import log_activity

FIELDS = ("title", "description", "content_url", "content_type", "class_id_fk", "is_public")
PARSERS = {"class_id_fk": parse_int, "is_public": parse_bool}


def _visible(stmt):
    """Tutorials of the user's institute plus public ones."""
    institute_id = current_institute_id()
    if institute_id is None:
        return stmt
    return stmt.where(or_(Tutorial.institute_id_fk == institute_id, Tutorial.is_public.is_(True)))


def _get_tutorial(tutorial_id, for_update=False):
    tutorial = db.session.get(Tutorial, tutorial_id)
    if tutorial is None:
        return None
    if owns(tutorial):
        return tutorial
    if not for_update and tutorial.is_public:
        return tutorial
    return None


def _row(tutorial, school_class=None):
    out = tutorial.to_dict()
    out["class"] = {"class_id": school_class.class_id, "class_name": school_class.class_name} if school_class else None
    return out


def _valid_class(class_id):
    if class_id is None:
        return True
    return owns(db.session.get(SchoolClass, class_id))


@tutorials_bp.route("/", methods=["GET"])
@login_required
def list_tutorials():
    q = _visible(
        select(Tutorial, SchoolClass).outerjoin(SchoolClass, SchoolClass.class_id == Tutorial.class_id_fk)
    ).order_by(Tutorial.created_at.desc(), Tutorial.tutorial_id.desc())
    return api_success({"items": [_row(t, c) for t, c in db.session.execute(q).all()]})


@tutorials_bp.route("/class/<int:class_id>", methods=["GET"])
@login_required
def by_class(class_id):
    q = _visible(select(Tutorial).where(Tutorial.class_id_fk == class_id)).order_by(Tutorial.created_at.desc())
    return api_success({"items": [t.to_dict() for t in db.session.execute(q).scalars()]})


@tutorials_bp.route("/stats", methods=["GET"])
@login_required
def stats():
    total = db.session.scalar(_visible(select(func.count(Tutorial.tutorial_id)))) or 0
    return api_success({"total": total})


@tutorials_bp.route("/<int:tutorial_id>", methods=["GET"])
@login_required
def get_tutorial(tutorial_id):
    tutorial = _get_tutorial(tutorial_id)
    if tutorial is None:
        return api_error("not_found", "Tutorial not found", 404)
    school_class = db.session.get(SchoolClass, tutorial.class_id_fk) if tutorial.class_id_fk else None
    return api_success(_row(tutorial, school_class))


@tutorials_bp.route("/", methods=["POST"])
@login_required
@role_required("admin", "teacher", "staff")
@csrf_required
def create_tutorial():
    data = get_payload()
    if data.get("content_type") and data["content_type"] not in CONTENT_TYPES:
        return api_error("invalid_type", f"content_type must be one of {', '.join(CONTENT_TYPES)}", 400)
    tutorial = Tutorial(institute_id_fk=current_institute_id(), created_by_fk=current_user.user_id, is_public=False)
    try:
        apply_fields(tutorial, data, FIELDS, PARSERS)
    except ValueError as e:
        return api_error("invalid_input", str(e), 400)
    if not tutorial.title:
        return api_error("missing_fields", "title is required", 400)
    if not _valid_class(tutorial.class_id_fk):
        return api_error("not_found", "Class not found", 404)
    db.session.add(tutorial)
    err = commit_or_error("creating tutorial")
    if err:
        return err
    log_activity("create", "tutorial", tutorial.tutorial_id, tutorial.title)
    db.session.commit()
    return api_success(tutorial.to_dict(), status=201)


@tutorials_bp.route("/<int:tutorial_id>", methods=["PUT", "PATCH"])
@login_required
@role_required("admin", "teacher", "staff")
@csrf_required
def update_tutorial(tutorial_id):
    tutorial = _get_tutorial(tutorial_id, for_update=True)
    if tutorial is None:
        return api_error("not_found", "Tutorial not found", 404)
    data = get_payload()
    if data.get("content_type") and data["content_type"] not in CONTENT_TYPES:
        return api_error("invalid_type", f"content_type must be one of {', '.join(CONTENT_TYPES)}", 400)
    try:
        changed = apply_fields(tutorial, data, FIELDS, PARSERS)
    except ValueError as e:
        return api_error("invalid_input", str(e), 400)
    if "class_id_fk" in changed and not _valid_class(tutorial.class_id_fk):
        db.session.rollback()
        return api_error("not_found", "Class not found", 404)
    log_activity("update", "tutorial", tutorial_id, tutorial.title, {"fields": changed})
    err = commit_or_error("updating tutorial")
    if err:
        return err
    return api_success(tutorial.to_dict())


@tutorials_bp.route("/<int:tutorial_id>", methods=["DELETE"])
@login_required
@role_required("admin", "teacher", "staff")
@csrf_required
def delete_tutorial(tutorial_id):
    tutorial = _get_tutorial(tutorial_id, for_update=True)
    if tutorial is None:
        return api_error("not_found", "Tutorial not found", 404)
    title = tutorial.title
    db.session.delete(tutorial)
    log_activity("delete", "tutorial", tutorial_id, title)
    err = commit_or_error("deleting tutorial")
    if err:
        return err
    return api_success({"deleted": tutorial_id})


@tutorials_bp.route("/<int:tutorial_id>/progress", methods=["POST"])
@login_required
@csrf_required
def update_progress(tutorial_id):
    """Upsert a student's progress. Completing pins the percentage to 100."""
    tutorial = _get_tutorial(tutorial_id)
    if tutorial is None:
        return api_error("not_found", "Tutorial not found", 404)
    data = get_payload()
    status = (data.get("status") or "").strip().lower()
    if status not in PROGRESS_STATUSES:
        return api_error("invalid_status", f"status must be one of {', '.join(PROGRESS_STATUSES)}", 400)
    try:
        student_id = int(data.get("student_id"))
        percentage = parse_int(data.get("progress_percentage"))
    except (TypeError, ValueError):
        return api_error("invalid_input", "student_id and progress_percentage must be integers", 400)
    student = db.session.get(Student, student_id)
    if not owns(student):
        return api_error("not_found", "Student not found", 404)

    progress = db.session.execute(
        select(TutorialProgress).filter_by(tutorial_id_fk=tutorial_id, student_id_fk=student_id)
    ).scalars().first()
    if progress is None:
        progress = TutorialProgress(tutorial_id_fk=tutorial_id, student_id_fk=student_id)
        db.session.add(progress)

    now = utc_now()
    progress.status = status
    if status == "completed":
        progress.progress_percentage = 100
        progress.completed_at = now
        progress.started_at = progress.started_at or now
    else:
        progress.progress_percentage = max(0, min(100, percentage or 0))
        progress.completed_at = None
        if status == "in_progress" and progress.started_at is None:
            progress.started_at = now
    err = commit_or_error("updating tutorial progress")
    if err:
        return err
    return api_success(progress.to_dict())


@tutorials_bp.route("/progress/summary", methods=["GET"])
@login_required
def progress_summary():
    """
    Completion counts per tutorial. For class tutorials the denominator is
    the class's active enrollment; otherwise it is the students with any
    progress recorded.
    """
    progress_counts = {
        tid: (total, completed, in_progress)
        for tid, total, completed, in_progress in db.session.execute(
            select(
                TutorialProgress.tutorial_id_fk,
                func.count(TutorialProgress.progress_id),
                func.sum(case((TutorialProgress.status == "completed", 1), else_=0)),
                func.sum(case((TutorialProgress.status == "in_progress", 1), else_=0)),
            ).group_by(TutorialProgress.tutorial_id_fk)
        ).all()
    }
    enrolled = dict(db.session.execute(
        select(Enrollment.class_id_fk, func.count(Enrollment.enrollment_id))
        .where(Enrollment.status == "active")
        .group_by(Enrollment.class_id_fk)
    ).all())

    q = _visible(
        select(Tutorial, SchoolClass).outerjoin(SchoolClass, SchoolClass.class_id == Tutorial.class_id_fk)
    ).order_by(Tutorial.title)
    items = []
    for t, c in db.session.execute(q).all():
        with_progress, completed, in_progress = progress_counts.get(t.tutorial_id, (0, 0, 0))
        completed, in_progress = completed or 0, in_progress or 0
        total = enrolled.get(t.class_id_fk, 0) if t.class_id_fk else with_progress
        total = max(total, with_progress)
        items.append({
            "tutorial_id": t.tutorial_id,
            "title": t.title,
            "class_id": c.class_id if c else None,
            "class_name": c.class_name if c else None,
            "total_students": total,
            "completed_count": completed,
            "in_progress_count": in_progress,
            "not_started_count": total - completed - in_progress,
            "completion_percentage": round(completed / total * 100) if total else 0,
        })
    return api_success({"items": items})
