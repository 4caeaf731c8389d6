from flask import request, render_template_string, current_app
from flask_login import login_required

from . import payments_bp
from . import services
from .. import db, csrf_required
from ..models import Student, Institute, PAYMENT_METHODS, PAYMENT_STATUSES
from ..api_utils import api_success, api_error, get_payload, parse_date, commit_or_error
from ..decorators import role_required
from ..tenancy import owns
from ..audit import log_activity

RECEIPT_TEMPLATE = """<!doctype html>
<html>
<head>
  <meta charset="utf-8">
  <title>Receipt #{{ payment.payment_id }}</title>
  <style>
    body { font-family: sans-serif; max-width: 640px; margin: 2rem auto; color: #222; }
    table { width: 100%; border-collapse: collapse; }
    td { padding: .4rem 0; border-bottom: 1px solid #eee; }
    td.label { color: #666; width: 40%; }
    .total { font-size: 1.4rem; font-weight: bold; }
  </style>
</head>
<body>
  <h1>{{ institute.name if institute else "Payment Receipt" }}</h1>
  {% if institute and institute.address %}<p>{{ institute.address }}</p>{% endif %}
  <h2>Receipt #{{ payment.payment_id }}</h2>
  <table>
    <tr><td class="label">Student</td><td>{{ student.full_name }} ({{ student.student_code }})</td></tr>
    <tr><td class="label">Fee month</td><td>{{ payment.payment_month.strftime("%B %Y") }}</td></tr>
    <tr><td class="label">Paid on</td><td>{{ payment.payment_date.isoformat() if payment.payment_date else "" }}</td></tr>
    <tr><td class="label">Method</td><td>{{ (payment.payment_method or "").replace("_", " ") }}</td></tr>
    {% if payment.transaction_id %}<tr><td class="label">Transaction</td><td>{{ payment.transaction_id }}</td></tr>{% endif %}
    <tr><td class="label">Amount</td><td class="total">{{ "%.2f"|format(payment.amount) }}</td></tr>
  </table>
</body>
</html>
"""


def _load(payment_id):
    row = services.get_payment(payment_id)
    if row is None:
        return None, None
    return row[0], row[1]


@payments_bp.route("/", methods=["GET"])
@login_required
def list_payments():
    status = (request.args.get("status") or "").strip().lower() or None
    if status and status not in PAYMENT_STATUSES:
        return api_error("invalid_status", f"Unknown status: {status}", 400)
    items = services.list_payments(status)
    return api_success({"items": items}, {"status": status, "count": len(items)})


@payments_bp.route("/", methods=["POST"])
@login_required
@role_required("admin", "staff")
@csrf_required
def create_payment():
    data = get_payload()
    try:
        student_id = int(data.get("student_id_fk") or 0)
    except (TypeError, ValueError):
        return api_error("invalid_student", "student_id_fk must be an integer", 400)
    student = db.session.get(Student, student_id)
    if not owns(student):
        return api_error("not_found", "Student not found", 404)
    try:
        payment = services.create_payment(student, data)
    except ValueError as e:
        return api_error("invalid_payment", str(e), 400)
    err = commit_or_error("creating payment")
    if err:
        return err
    log_activity("create", "payment", payment.payment_id, f"Payment for {student.full_name}")
    err = commit_or_error("logging payment")
    if err:
        return err
    return api_success(payment.to_dict(), status=201)


@payments_bp.route("/<int:payment_id>/mark-paid", methods=["POST"])
@login_required
@role_required("admin", "staff")
@csrf_required
def mark_paid(payment_id):
    payment, student = _load(payment_id)
    if payment is None:
        return api_error("not_found", "Payment not found", 404)
    data = get_payload()
    method = (data.get("payment_method") or "").strip().lower()
    if method not in PAYMENT_METHODS:
        return api_error("invalid_method", f"payment_method must be one of {', '.join(PAYMENT_METHODS)}", 400)
    try:
        paid_on = parse_date(data.get("payment_date"))
    except ValueError:
        return api_error("invalid_date", "payment_date must be YYYY-MM-DD", 400)
    try:
        services.mark_payment_paid(payment, method, data.get("transaction_id"), paid_on)
    except services.PaymentStateError as e:
        return api_error("invalid_transition", str(e), 409)
    log_activity("update", "payment", payment.payment_id, "Marked as paid", {"method": method})
    err = commit_or_error("marking payment paid")
    if err:
        return err
    current_app.logger.info("Payment %s marked paid (%s)", payment.payment_id, method)
    return api_success(payment.to_dict())


@payments_bp.route("/<int:payment_id>/status", methods=["POST"])
@login_required
@role_required("admin", "staff")
@csrf_required
def update_status(payment_id):
    payment, student = _load(payment_id)
    if payment is None:
        return api_error("not_found", "Payment not found", 404)
    data = get_payload()
    status = (data.get("status") or "").strip().lower()
    try:
        if status == "partial":
            services.mark_payment_partial(payment, data.get("notes"))
        elif status == "paid":
            services.mark_payment_paid(payment, (data.get("payment_method") or "other").strip().lower(),
                                       data.get("transaction_id"))
        else:
            return api_error("invalid_status", "Only 'partial' or 'paid' may be set manually", 400)
    except services.PaymentStateError as e:
        return api_error("invalid_transition", str(e), 409)
    log_activity("update", "payment", payment.payment_id, f"Status set to {status}")
    err = commit_or_error("updating payment status")
    if err:
        return err
    return api_success(payment.to_dict())


@payments_bp.route("/<int:payment_id>/receipt", methods=["GET"])
@login_required
def receipt(payment_id):
    payment, student = _load(payment_id)
    if payment is None:
        return api_error("not_found", "Payment not found", 404)
    if payment.status != "paid":
        return api_error("not_paid", "Receipts are only available for paid payments", 400)
    institute = db.session.get(Institute, student.institute_id_fk) if student.institute_id_fk else None
    html = render_template_string(RECEIPT_TEMPLATE, payment=payment, student=student, institute=institute)
    return html, 200, {"Content-Type": "text/html; charset=utf-8"}


@payments_bp.route("/overdue", methods=["GET"])
@login_required
def overdue():
    return api_success(services.overdue_payments())


@payments_bp.route("/student/<int:student_id>/summary", methods=["GET"])
@login_required
def student_summary(student_id):
    student = db.session.get(Student, student_id)
    if not owns(student):
        return api_error("not_found", "Student not found", 404)
    return api_success(services.payment_summary(student_id))
