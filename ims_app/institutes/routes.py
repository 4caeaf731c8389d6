from flask import request
from flask_login import login_required, current_user
from sqlalchemy import select, func

from . import institutes_bp
from .. import db, csrf_required
from ..models import Institute, Student, SchoolClass, INSTITUTE_STATUSES
from ..api_utils import api_success, api_error, get_payload, apply_fields, commit_or_error
from ..decorators import admin_required
from ..tenancy import owns, scope
from ..audit import log_activity

EDITABLE = ("code", "name", "address", "phone", "email", "logo_url", "status")


def _counts(institute_ids):
    students = dict(db.session.execute(
        select(Student.institute_id_fk, func.count(Student.student_id))
        .where(Student.institute_id_fk.in_(institute_ids))
        .group_by(Student.institute_id_fk)
    ).all())
    classes = dict(db.session.execute(
        select(SchoolClass.institute_id_fk, func.count(SchoolClass.class_id))
        .where(SchoolClass.institute_id_fk.in_(institute_ids))
        .group_by(SchoolClass.institute_id_fk)
    ).all())
    return students, classes


@institutes_bp.route("/", methods=["GET"])
@login_required
def list_institutes():
    q = scope(select(Institute), Institute.institute_id).order_by(Institute.name)
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.where(Institute.status == status)
    institutes = db.session.execute(q).scalars().all()
    students, classes = _counts([i.institute_id for i in institutes])
    items = []
    for inst in institutes:
        row = inst.to_dict()
        row["student_count"] = students.get(inst.institute_id, 0)
        row["class_count"] = classes.get(inst.institute_id, 0)
        items.append(row)
    return api_success({"items": items})


@institutes_bp.route("/<int:institute_id>", methods=["GET"])
@login_required
def get_institute(institute_id):
    inst = db.session.get(Institute, institute_id)
    if not owns(inst, "institute_id"):
        return api_error("not_found", "Institute not found", 404)
    return api_success(inst.to_dict())


@institutes_bp.route("/", methods=["POST"])
@login_required
@admin_required
@csrf_required
def create_institute():
    # Only platform admins (no institute of their own) create tenants
    if current_user.institute_id_fk is not None:
        return api_error("forbidden", "Only platform administrators can create institutes.", 403)
    data = get_payload()
    if not (data.get("code") or "").strip() or not (data.get("name") or "").strip():
        return api_error("missing_fields", "code and name are required", 400)
    if (data.get("status") or "active") not in INSTITUTE_STATUSES:
        return api_error("invalid_status", "Unknown status", 400)
    inst = Institute()
    apply_fields(inst, data, EDITABLE)
    inst.status = inst.status or "active"
    db.session.add(inst)
    err = commit_or_error("creating institute")
    if err:
        return err
    log_activity("create", "institute", inst.institute_id, inst.name)
    db.session.commit()
    return api_success(inst.to_dict(), status=201)


@institutes_bp.route("/<int:institute_id>", methods=["PUT", "PATCH"])
@login_required
@admin_required
@csrf_required
def update_institute(institute_id):
    inst = db.session.get(Institute, institute_id)
    if not owns(inst, "institute_id"):
        return api_error("not_found", "Institute not found", 404)
    data = get_payload()
    if "status" in data and data["status"] not in INSTITUTE_STATUSES:
        return api_error("invalid_status", "Unknown status", 400)
    changed = apply_fields(inst, data, EDITABLE)
    log_activity("update", "institute", inst.institute_id, inst.name, {"fields": changed})
    err = commit_or_error("updating institute")
    if err:
        return err
    return api_success(inst.to_dict())


@institutes_bp.route("/<int:institute_id>", methods=["DELETE"])
@login_required
@admin_required
@csrf_required
def delete_institute(institute_id):
    if current_user.institute_id_fk is not None:
        return api_error("forbidden", "Only platform administrators can delete institutes.", 403)
    inst = db.session.get(Institute, institute_id)
    if inst is None:
        return api_error("not_found", "Institute not found", 404)
    db.session.delete(inst)
    log_activity("delete", "institute", institute_id, inst.name)
    err = commit_or_error("deleting institute")
    if err:
        return err
    return api_success({"deleted": institute_id})
