import calendar
import time
import json
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional

from flask import current_app
from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError

from .. import db
from ..models import (
    Enrollment, SchoolClass, FeePayment, Student, Communication, utc_now,
    PAYMENT_STATUSES, PAYMENT_METHODS,
)
from ..service_db import service_session
from ..email_utils import send_email, email_configured, DeliveryError
from ..sms_utils import send_sms, sms_configured
from ..tenancy import scope
from ..api_utils import parse_date, parse_float, parse_int

PAYABLE_STATUSES = ("unpaid", "overdue", "partial")
OUTSTANDING_STATUSES = ("unpaid", "overdue")


class PaymentStateError(ValueError):
    """Requested status change is not a legal FeePayment transition."""


def month_start(d: date) -> date:
    return d.replace(day=1)


def due_date_for(month: date, due_day: int) -> date:
    last_day = calendar.monthrange(month.year, month.month)[1]
    return month.replace(day=min(max(1, int(due_day)), last_day))


# ==========================================
# SCHEDULED JOBS
# ==========================================

def generate_monthly_fees(target_month: date) -> int:
    """
    Create an unpaid fee record for every active enrollment that has none
    for the month containing ``target_month``.

    Amount is the enrollment's custom fee, falling back to the class
    monthly fee. Runs as one transaction on the service bind; the
    (enrollment, month) unique constraint makes a racing duplicate fail the
    whole batch instead of double-billing.
    Returns the number of records created.
    """
    month = month_start(target_month)
    due = due_date_for(month, current_app.config.get("FEE_DUE_DAY", 5))

    with service_session() as session:
        billed = (
            select(FeePayment.enrollment_id_fk)
            .where(FeePayment.payment_month == month)
            .where(FeePayment.enrollment_id_fk.isnot(None))
        )
        rows = session.execute(
            select(Enrollment, SchoolClass.monthly_fee)
            .join(SchoolClass, SchoolClass.class_id == Enrollment.class_id_fk)
            .where(Enrollment.status == "active")
            .where(Enrollment.enrollment_id.not_in(billed))
        ).all()
        for enrollment, monthly_fee in rows:
            amount = enrollment.custom_fee if enrollment.custom_fee is not None else (monthly_fee or 0.0)
            session.add(FeePayment(
                student_id_fk=enrollment.student_id_fk,
                enrollment_id_fk=enrollment.enrollment_id,
                amount=amount,
                payment_month=month,
                due_date=due,
                status="unpaid",
            ))
        count = len(rows)

    current_app.logger.info("Generated %s fee records for %s", count, month.isoformat())
    return count


def mark_overdue_payments(today: Optional[date] = None) -> int:
    """Flip unpaid payments whose due date has passed to overdue. Returns rows updated."""
    today = today or date.today()
    with service_session() as session:
        result = session.execute(
            update(FeePayment)
            .where(FeePayment.status == "unpaid")
            .where(FeePayment.due_date < today)
            .values(status="overdue", updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
    current_app.logger.info("Marked %s payments as overdue", count)
    return count


@dataclass
class ReminderTarget:
    """One unpaid payment plus the contact details needed to remind about it."""
    payment_id: int
    amount: float
    due_date: date
    payment_month: date
    student_id: int
    student_name: str
    institute_id: Optional[int] = None
    student_email: Optional[str] = None
    student_phone: Optional[str] = None
    guardian_name: Optional[str] = None
    guardian_email: Optional[str] = None
    guardian_phone: Optional[str] = None

    @classmethod
    def from_row(cls, payment, student):
        return cls(
            payment_id=payment.payment_id,
            amount=float(payment.amount or 0),
            due_date=payment.due_date,
            payment_month=payment.payment_month,
            student_id=student.student_id,
            student_name=student.full_name,
            institute_id=student.institute_id_fk,
            student_email=(student.email or "").strip() or None,
            student_phone=(student.phone or "").strip() or None,
            guardian_name=(student.guardian_name or "").strip() or None,
            guardian_email=(student.guardian_email or "").strip() or None,
            guardian_phone=(student.guardian_phone or "").strip() or None,
        )

    @property
    def email_to(self):
        return self.guardian_email or self.student_email

    @property
    def phone_to(self):
        return self.guardian_phone or self.student_phone

    @property
    def recipient_name(self):
        return self.guardian_name or self.student_name

    def dedupe_key(self, days_before_due):
        return f"reminder:{self.payment_id}:{self.due_date.isoformat()}:{days_before_due}"


@dataclass
class ReminderResult:
    emails_sent: int = 0
    sms_sent: int = 0
    payments_processed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


def _channel_for(has_email, has_sms):
    if has_email and has_sms:
        return "both"
    return "email" if has_email else "sms"


def _reminder_bodies(target):
    due_label = target.due_date.strftime("%A, %B %d, %Y")
    amount = f"{target.amount:.2f}"
    subject = f"Payment Reminder - Due {due_label}"
    text = (
        f"Dear {target.recipient_name},\n\n"
        f"This is a friendly reminder that a payment is due soon.\n\n"
        f"Student: {target.student_name}\n"
        f"Amount Due: {amount}\n"
        f"Due Date: {due_label}\n\n"
        "Please ensure payment is made by the due date to avoid any late fees.\n"
    )
    html = (
        "<div style=\"font-family: sans-serif; max-width: 600px; margin: 0 auto;\">"
        "<h2>Payment Reminder</h2>"
        f"<p>Dear {target.recipient_name},</p>"
        "<p>This is a friendly reminder that a payment is due soon:</p>"
        f"<p><strong>Student:</strong> {target.student_name}<br>"
        f"<strong>Amount Due:</strong> {amount}<br>"
        f"<strong>Due Date:</strong> {due_label}</p>"
        "<p>Please ensure payment is made by the due date to avoid any late fees.</p>"
        "</div>"
    )
    sms = (
        f"Payment Reminder: {amount} is due on {due_label} for {target.student_name}. "
        "Please make payment before the due date."
    )
    return subject, text, html, sms


def fetch_reminder_targets(session, due_on: date):
    rows = session.execute(
        select(FeePayment, Student)
        .join(Student, Student.student_id == FeePayment.student_id_fk)
        .where(FeePayment.status == "unpaid")
        .where(FeePayment.due_date == due_on)
        .order_by(FeePayment.payment_id)
    ).all()
    return [ReminderTarget.from_row(payment, student) for payment, student in rows]


def send_payment_reminders(days_before_due: int = 3, today: Optional[date] = None) -> ReminderResult:
    """
    Email/SMS a reminder for every unpaid payment due exactly
    ``days_before_due`` days from ``today``.

    A provider failure for one recipient is recorded in ``errors`` and the
    batch carries on. Each payment gets one Communication row; payments
    that already have a sent reminder for the same due date and lead time
    are skipped.
    """
    today = today or date.today()
    due_on = today + timedelta(days=days_before_due)
    result = ReminderResult()

    with service_session() as session:
        targets = fetch_reminder_targets(session, due_on)
        keys = [t.dedupe_key(days_before_due) for t in targets]
        already_sent = set()
        if keys:
            already_sent = set(session.execute(
                select(Communication.dedupe_key)
                .where(Communication.dedupe_key.in_(keys))
                .where(Communication.status == "sent")
            ).scalars().all())

    result.payments_processed = len(targets)
    if not targets:
        return result

    use_email = email_configured()
    use_sms = sms_configured()
    delay = float(current_app.config.get("REMINDER_SEND_DELAY") or 0)
    calls = 0

    def _throttle():
        nonlocal calls
        if calls and delay > 0:
            time.sleep(delay)
        calls += 1

    for target in targets:
        key = target.dedupe_key(days_before_due)
        if key in already_sent:
            result.skipped += 1
            continue

        subject, text, html, sms_body = _reminder_bodies(target)
        attempted_email = attempted_sms = False
        failures = []

        if target.email_to and use_email:
            attempted_email = True
            _throttle()
            try:
                send_email(subject, target.email_to, text, html)
                result.emails_sent += 1
            except DeliveryError as e:
                failures.append(f"Email to {target.email_to}: {e}")

        if target.phone_to and use_sms:
            attempted_sms = True
            _throttle()
            try:
                send_sms(target.phone_to, sms_body)
                result.sms_sent += 1
            except DeliveryError as e:
                failures.append(f"SMS to {target.phone_to}: {e}")

        result.errors.extend(failures)
        if attempted_email or attempted_sms:
            channel = _channel_for(attempted_email, attempted_sms)
            status = "failed" if failures else "sent"
            error_message = "; ".join(failures) or None
        else:
            channel = _channel_for(bool(target.email_to), bool(target.phone_to))
            status = "failed"
            error_message = "No configured provider for the available contact details"

        try:
            with service_session() as session:
                session.add(Communication(
                    institute_id_fk=target.institute_id,
                    recipient_type="student",
                    recipient_id=target.student_id,
                    channel=channel,
                    subject=subject,
                    message=f"Payment reminder for {target.amount:.2f} due on {target.due_date.isoformat()}",
                    status=status,
                    kind="payment_reminder",
                    payment_id_fk=target.payment_id,
                    dedupe_key=key,
                    sent_at=utc_now() if status == "sent" else None,
                    error_message=error_message,
                    metadata_json=json.dumps({"payment_id": target.payment_id, "daysBeforeDue": days_before_due}),
                ))
        except SQLAlchemyError as e:
            current_app.logger.exception("Failed to log reminder for payment %s", target.payment_id)
            result.errors.append(f"Log for payment {target.payment_id}: {e}")

    current_app.logger.info(
        "Reminders for %s: %s emails, %s sms, %s skipped, %s errors",
        due_on.isoformat(), result.emails_sent, result.sms_sent, result.skipped, len(result.errors),
    )
    return result


# ==========================================
# QUERY / MUTATION LAYER (request session)
# ==========================================

def _scoped_payments():
    return scope(
        select(FeePayment, Student).join(Student, Student.student_id == FeePayment.student_id_fk),
        Student.institute_id_fk,
    )


def payment_row(payment, student):
    out = payment.to_dict()
    out["student"] = {"full_name": student.full_name, "student_code": student.student_code}
    return out


def list_payments(status=None):
    q = _scoped_payments().order_by(FeePayment.created_at.desc(), FeePayment.payment_id.desc())
    if status:
        q = q.where(FeePayment.status == status)
    return [payment_row(p, s) for p, s in db.session.execute(q).all()]


def get_payment(payment_id):
    row = db.session.execute(_scoped_payments().where(FeePayment.payment_id == payment_id)).first()
    return row


def mark_payment_paid(payment, method, transaction_id=None, paid_on=None):
    if payment.status not in PAYABLE_STATUSES:
        raise PaymentStateError(f"Payment is already {payment.status}")
    payment.status = "paid"
    payment.payment_method = method
    payment.transaction_id = transaction_id or None
    payment.payment_date = paid_on or date.today()
    return payment


def mark_payment_partial(payment, notes=None):
    if payment.status not in OUTSTANDING_STATUSES:
        raise PaymentStateError(f"Cannot mark a {payment.status} payment as partial")
    payment.status = "partial"
    if notes:
        payment.notes = notes
    return payment


def payment_summary(student_id):
    rows = db.session.execute(
        select(FeePayment.status, func.count(FeePayment.payment_id), func.coalesce(func.sum(FeePayment.amount), 0.0))
        .where(FeePayment.student_id_fk == student_id)
        .group_by(FeePayment.status)
    ).all()
    summary = {
        "student_id": student_id,
        "total_payments": 0,
        "total_paid": 0.0,
        "total_unpaid": 0.0,
        "total_overdue": 0.0,
        "total_partial": 0.0,
    }
    for status, count, amount in rows:
        summary["total_payments"] += int(count or 0)
        key = f"total_{status}"
        if key in summary:
            summary[key] = round(float(amount or 0), 2)
    return summary


def overdue_payments(today=None):
    """Outstanding payments past their due date, oldest first, for the dashboard banner."""
    today = today or date.today()
    q = (
        _scoped_payments()
        .where(FeePayment.status.in_(OUTSTANDING_STATUSES))
        .where(FeePayment.due_date < today)
        .order_by(FeePayment.due_date.asc())
    )
    items = []
    for p, s in db.session.execute(q).all():
        items.append({
            "payment_id": p.payment_id,
            "student_id": s.student_id,
            "student_name": s.full_name,
            "amount": p.amount,
            "due_date": p.due_date.isoformat(),
            "days_overdue": (today - p.due_date).days,
        })
    return {"payments": items, "total": round(sum(i["amount"] for i in items), 2)}


def _enrollment_for(student, value):
    enrollment_id = parse_int(value)
    if enrollment_id is None:
        return None
    enrollment = db.session.get(Enrollment, enrollment_id)
    if enrollment is None or enrollment.student_id_fk != student.student_id:
        raise ValueError("enrollment_id_fk does not belong to this student")
    return enrollment.enrollment_id


def create_payment(student, data):
    """Manual fee record (walk-in payment, adjustment). Caller commits."""
    amount = parse_float(data.get("amount"))
    if amount is None or amount < 0:
        raise ValueError("amount must be a non-negative number")
    payment_month = parse_date(data.get("payment_month")) or month_start(date.today())
    due = parse_date(data.get("due_date")) or due_date_for(
        month_start(payment_month), current_app.config.get("FEE_DUE_DAY", 5)
    )
    payment = FeePayment(
        student_id_fk=student.student_id,
        enrollment_id_fk=_enrollment_for(student, data.get("enrollment_id_fk")),
        amount=amount,
        payment_month=month_start(payment_month),
        due_date=due,
        payment_date=parse_date(data.get("payment_date")),
        status=(data.get("status") or "unpaid").strip().lower(),
        payment_method=(data.get("payment_method") or "").strip().lower() or None,
        transaction_id=(data.get("transaction_id") or "").strip() or None,
        notes=(data.get("notes") or "").strip() or None,
    )
    if payment.status not in PAYMENT_STATUSES:
        raise ValueError(f"Unknown status: {payment.status}")
    if payment.payment_method and payment.payment_method not in PAYMENT_METHODS:
        raise ValueError(f"Unknown payment method: {payment.payment_method}")
    db.session.add(payment)
    return payment
