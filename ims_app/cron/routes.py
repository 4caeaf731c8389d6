"""Scheduler entry points for the fee jobs.

These are called by an external cron with ``Authorization: Bearer
<CRON_SECRET>`` and answer with flat JSON (no API envelope) so that
schedulers can log the body as-is.
"""
from datetime import date

from flask import jsonify, current_app
from sqlalchemy.exc import SQLAlchemyError

from . import cron_bp
from .. import limiter
from ..api_utils import get_payload, parse_date, parse_int
from ..decorators import cron_secret_required
from ..payments.services import generate_monthly_fees, mark_overdue_payments, send_payment_reminders
from ..service_db import ConfigurationError

MAX_REMINDER_LEAD_DAYS = 366


def _job_error(job, exc):
    if isinstance(exc, ConfigurationError):
        current_app.logger.error("%s aborted: %s", job, exc)
    else:
        current_app.logger.exception("%s failed", job)
    return jsonify({"error": str(exc) or exc.__class__.__name__}), 500


@cron_bp.route("/generate-fees", methods=["POST"])
@limiter.limit("10 per minute")
@cron_secret_required
def generate_fees():
    data = get_payload()
    try:
        target = parse_date(data.get("targetMonth")) or date.today()
    except ValueError:
        return jsonify({"error": "targetMonth must be an ISO date"}), 400
    try:
        count = generate_monthly_fees(target)
    except (ConfigurationError, SQLAlchemyError) as e:
        return _job_error("Fee generation", e)
    return jsonify({
        "success": True,
        "message": f"Generated {count} fee records",
        "count": count,
    })


@cron_bp.route("/mark-overdue", methods=["POST"])
@limiter.limit("10 per minute")
@cron_secret_required
def mark_overdue():
    try:
        count = mark_overdue_payments()
    except (ConfigurationError, SQLAlchemyError) as e:
        return _job_error("Overdue marking", e)
    return jsonify({
        "success": True,
        "message": f"Marked {count} payments as overdue",
        "count": count,
    })


@cron_bp.route("/send-reminders", methods=["POST"])
@limiter.limit("10 per minute")
@cron_secret_required
def send_reminders():
    data = get_payload()
    raw = data.get("daysBeforeDue")
    # JSON true/false and 3.7 are not day counts
    if isinstance(raw, bool) or (isinstance(raw, float) and not raw.is_integer()):
        return jsonify({"error": "daysBeforeDue must be an integer"}), 400
    try:
        days = parse_int(raw)
    except (TypeError, ValueError):
        return jsonify({"error": "daysBeforeDue must be an integer"}), 400
    if days is None:
        days = 3
    if days < 0:
        return jsonify({"error": "daysBeforeDue must not be negative"}), 400
    if days > MAX_REMINDER_LEAD_DAYS:
        return jsonify({"error": f"daysBeforeDue must be at most {MAX_REMINDER_LEAD_DAYS}"}), 400
    try:
        result = send_payment_reminders(days)
    except (ConfigurationError, SQLAlchemyError) as e:
        return _job_error("Reminder dispatch", e)

    body = {
        "success": True,
        "message": f"Sent {result.emails_sent} emails and {result.sms_sent} SMS",
        "emailsSent": result.emails_sent,
        "smsSent": result.sms_sent,
        "paymentsProcessed": result.payments_processed,
        "skipped": result.skipped,
    }
    if result.errors:
        body["errors"] = result.errors
    return jsonify(body)
