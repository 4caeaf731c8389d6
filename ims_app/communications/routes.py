import json
from datetime import datetime, timezone

from flask import request, current_app
from flask_login import login_required, current_user
from sqlalchemy import select

from . import communications_bp
from . import services
from .. import db, csrf_required
from ..models import (
    Communication, User, Student, SchoolClass, NotificationLog, ActivityLog,
    CHANNELS, RECIPIENT_TYPES, utc_now,
)
from ..api_utils import api_success, api_error, get_payload, commit_or_error, parse_bool, parse_int
from ..decorators import role_required, admin_required
from ..tenancy import owns, scope, current_institute_id
from ..audit import log_activity


def _limit(default=50, ceiling=200):
    try:
        return max(1, min(int(request.args.get("limit", default)), ceiling))
    except ValueError:
        return default


@communications_bp.route("/", methods=["GET"])
@login_required
def list_communications():
    q = scope(
        select(Communication, User.full_name).outerjoin(User, User.user_id == Communication.created_by_fk),
        Communication.institute_id_fk,
    ).order_by(Communication.created_at.desc(), Communication.communication_id.desc())
    kind = (request.args.get("kind") or "").strip()
    if kind:
        q = q.where(Communication.kind == kind)
    items = []
    for comm, author in db.session.execute(q.limit(_limit())).all():
        row = comm.to_dict()
        row["created_by_name"] = author
        items.append(row)
    return api_success({"items": items})


@communications_bp.route("/", methods=["POST"])
@login_required
@role_required("admin", "staff", "teacher")
@csrf_required
def create_communication():
    """Record a message and send it now, or store it as scheduled when scheduled_at is in the future."""
    data = get_payload()
    recipient_type = (data.get("recipient_type") or "").strip().lower()
    channel = (data.get("channel") or "").strip().lower()
    message = (data.get("message") or "").strip()
    if recipient_type not in RECIPIENT_TYPES:
        return api_error("invalid_recipient", f"recipient_type must be one of {', '.join(RECIPIENT_TYPES)}", 400)
    if channel not in CHANNELS:
        return api_error("invalid_channel", f"channel must be one of {', '.join(CHANNELS)}", 400)
    if not message:
        return api_error("missing_fields", "message is required", 400)
    try:
        recipient_id = parse_int(data.get("recipient_id"))
    except ValueError:
        return api_error("invalid_input", "recipient_id must be an integer", 400)

    if recipient_type == "student":
        if not owns(db.session.get(Student, recipient_id or 0)):
            return api_error("not_found", "Student not found", 404)
    elif recipient_type == "class":
        if not owns(db.session.get(SchoolClass, recipient_id or 0)):
            return api_error("not_found", "Class not found", 404)
    else:
        recipient_id = None

    scheduled_at = None
    if data.get("scheduled_at"):
        try:
            scheduled_at = datetime.fromisoformat(str(data["scheduled_at"]).replace("Z", "+00:00"))
        except ValueError:
            return api_error("invalid_date", "scheduled_at must be an ISO timestamp", 400)
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)

    comm = Communication(
        institute_id_fk=current_institute_id(),
        recipient_type=recipient_type,
        recipient_id=recipient_id,
        channel=channel,
        subject=(data.get("subject") or "").strip() or None,
        message=message,
        kind="manual",
        scheduled_at=scheduled_at,
        created_by_fk=current_user.user_id,
        status="pending",
    )
    db.session.add(comm)

    if scheduled_at and scheduled_at > utc_now():
        comm.status = "scheduled"
    else:
        recipients = services.resolve_recipients(recipient_type, recipient_id, current_institute_id())
        delivered, errors = services.dispatch(comm, recipients)
        current_app.logger.info("Communication to %s %s: %s delivered, %s errors",
                                recipient_type, recipient_id or "", delivered, len(errors))

    err = commit_or_error("saving communication")
    if err:
        return err
    log_activity("create", "communication", comm.communication_id, comm.subject or recipient_type)
    db.session.commit()
    return api_success(comm.to_dict(), status=201)


@communications_bp.route("/preferences", methods=["GET"])
@login_required
def get_preferences():
    prefs = services.get_or_create_preferences(current_user.user_id)
    err = commit_or_error("creating notification preferences")
    if err:
        return err
    return api_success(prefs.to_dict())


@communications_bp.route("/preferences", methods=["PUT", "PATCH"])
@login_required
@csrf_required
def update_preferences():
    data = get_payload()
    prefs = services.get_or_create_preferences(current_user.user_id)
    for name in services.PREFERENCE_FIELDS:
        if name in data:
            setattr(prefs, name, parse_bool(data[name]))
    err = commit_or_error("updating notification preferences")
    if err:
        return err
    return api_success(prefs.to_dict())


@communications_bp.route("/notify", methods=["POST"])
@login_required
@admin_required
@csrf_required
def notify():
    data = get_payload()
    try:
        user_id = int(data.get("user_id"))
    except (TypeError, ValueError):
        return api_error("invalid_input", "user_id must be an integer", 400)
    target = db.session.get(User, user_id)
    if not owns(target):
        return api_error("not_found", "User not found", 404)
    subject = (data.get("subject") or "").strip()
    message = (data.get("message") or "").strip()
    if not message:
        return api_error("missing_fields", "message is required", 400)
    try:
        channels = services.send_notification(user_id, (data.get("type") or "").strip().lower(), subject, message)
    except ValueError as e:
        return api_error("invalid_type", str(e), 400)
    err = commit_or_error("logging notification")
    if err:
        return err
    return api_success({"channels": channels})


@communications_bp.route("/notifications/logs", methods=["GET"])
@login_required
def notification_logs():
    logs = db.session.execute(
        select(NotificationLog)
        .where(NotificationLog.user_id_fk == current_user.user_id)
        .order_by(NotificationLog.created_at.desc(), NotificationLog.log_id.desc())
        .limit(_limit())
    ).scalars().all()
    return api_success({"items": [log.to_dict() for log in logs]})


@communications_bp.route("/activity-logs", methods=["GET"])
@login_required
@admin_required
def activity_logs():
    q = scope(
        select(ActivityLog, User).outerjoin(User, User.user_id == ActivityLog.user_id_fk),
        User.institute_id_fk,
    ).order_by(ActivityLog.created_at.desc(), ActivityLog.log_id.desc())
    entity_type = (request.args.get("entity_type") or "").strip()
    if entity_type:
        q = q.where(ActivityLog.entity_type == entity_type)
    items = []
    for entry, user in db.session.execute(q.limit(_limit())).all():
        row = entry.to_dict(exclude=("metadata_json",))
        row["metadata"] = json.loads(entry.metadata_json) if entry.metadata_json else {}
        row["user"] = {"full_name": user.full_name, "email": user.email} if user else None
        items.append(row)
    return api_success({"items": items})
