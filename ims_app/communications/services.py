import json
import time
from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy import select

from .. import db
from ..models import Student, Enrollment, User, NotificationPreference, NotificationLog, utc_now
from ..email_utils import send_email, email_configured, DeliveryError
from ..sms_utils import send_sms, sms_configured, send_whatsapp, whatsapp_configured

# Topic -> preference flag
NOTIFICATION_TOPICS = {
    "payment": "notify_payments",
    "attendance": "notify_attendance",
    "assessment": "notify_assessments",
    "enrollment": "notify_enrollments",
    "announcement": "notify_announcements",
}
PREFERENCE_FIELDS = (
    "email_notifications", "sms_notifications", "whatsapp_notifications",
    "notify_payments", "notify_attendance", "notify_assessments",
    "notify_enrollments", "notify_announcements",
)


@dataclass
class Recipient:
    student_id: int
    name: str
    email: Optional[str]
    phone: Optional[str]

    @classmethod
    def from_student(cls, student):
        return cls(
            student_id=student.student_id,
            name=student.full_name,
            email=(student.guardian_email or student.email or "").strip() or None,
            phone=(student.guardian_phone or student.phone or "").strip() or None,
        )


def resolve_recipients(recipient_type, recipient_id, institute_id):
    """Students addressed by a communication: one student, a class's active roster, or everyone active."""
    q = select(Student).where(Student.status == "active")
    if recipient_type == "student":
        q = select(Student).where(Student.student_id == recipient_id)
    elif recipient_type == "class":
        q = (
            q.join(Enrollment, Enrollment.student_id_fk == Student.student_id)
            .where(Enrollment.class_id_fk == recipient_id)
            .where(Enrollment.status == "active")
        )
    if institute_id is not None:
        q = q.where(Student.institute_id_fk == institute_id)
    return [Recipient.from_student(s) for s in db.session.execute(q.order_by(Student.student_id)).scalars()]


def dispatch(communication, recipients):
    """
    Send ``communication`` to each recipient over its channel(s) and record
    the outcome on the row. Provider failures are collected, not raised.
    """
    wants_email = communication.channel in ("email", "both")
    wants_sms = communication.channel in ("sms", "both")
    use_email = wants_email and email_configured()
    use_sms = wants_sms and sms_configured()
    delay = float(current_app.config.get("REMINDER_SEND_DELAY") or 0)

    delivered, errors, calls = 0, [], 0
    subject = communication.subject or "Message from your institute"
    for r in recipients:
        targets = []
        if use_email and r.email:
            targets.append(("email", r.email))
        if use_sms and r.phone:
            targets.append(("sms", r.phone))
        for kind, address in targets:
            if calls and delay > 0:
                time.sleep(delay)
            calls += 1
            try:
                if kind == "email":
                    send_email(subject, address, communication.message)
                else:
                    send_sms(address, communication.message)
                delivered += 1
            except DeliveryError as e:
                errors.append(f"{kind} to {address}: {e}")

    failed = len(errors)
    if delivered:
        communication.status = "sent"
        communication.sent_at = utc_now()
    else:
        communication.status = "failed"
        if not errors:
            errors.append("No recipient could be reached on the selected channel")
    communication.error_message = "; ".join(errors) or None
    communication.metadata_json = json.dumps({
        "recipients": len(recipients),
        "delivered": delivered,
        "failed": failed,
    })
    return delivered, errors


def get_or_create_preferences(user_id):
    prefs = db.session.execute(
        select(NotificationPreference).filter_by(user_id_fk=user_id)
    ).scalars().first()
    if prefs is None:
        prefs = NotificationPreference(
            user_id_fk=user_id,
            email_notifications=True,
            sms_notifications=False,
            whatsapp_notifications=False,
            notify_payments=True,
            notify_attendance=True,
            notify_assessments=True,
            notify_enrollments=True,
            notify_announcements=True,
        )
        db.session.add(prefs)
        db.session.flush()
    return prefs


def send_notification(user_id, topic, subject, message):
    """
    Notify a user over the channels their preferences enable, if the topic
    is switched on. Returns the channels used; writes one NotificationLog row
    when at least one channel was attempted. Caller commits.
    """
    if topic not in NOTIFICATION_TOPICS:
        raise ValueError(f"Unknown notification type: {topic}")
    user = db.session.get(User, user_id)
    if user is None:
        raise LookupError("User not found")
    prefs = get_or_create_preferences(user_id)
    if not getattr(prefs, NOTIFICATION_TOPICS[topic]):
        return []

    attempts = []
    if prefs.email_notifications and user.email and email_configured():
        attempts.append(("email", lambda: send_email(subject, user.email, message)))
    if prefs.sms_notifications and user.phone and sms_configured():
        attempts.append(("sms", lambda: send_sms(user.phone, message)))
    if prefs.whatsapp_notifications and user.phone and whatsapp_configured():
        attempts.append(("whatsapp", lambda: send_whatsapp(user.phone, message)))
    if not attempts:
        return []

    used, errors = [], []
    for channel, send in attempts:
        try:
            send()
            used.append(channel)
        except DeliveryError as e:
            errors.append(f"{channel}: {e}")

    db.session.add(NotificationLog(
        user_id_fk=user_id,
        notification_type=topic,
        channels=",".join(channel for channel, _ in attempts),
        subject=subject,
        message=message,
        status="sent" if used else "failed",
        error_message="; ".join(errors) or None,
    ))
    return used
