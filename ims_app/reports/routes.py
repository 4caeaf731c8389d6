from flask import request
from flask_login import login_required

from . import reports_bp
from . import services
from ..api_utils import api_success, api_error, parse_date
from ..decorators import role_required
from ..payments.services import overdue_payments
from ..tenancy import current_institute_id


def _range():
    start = parse_date(request.args.get("start"))
    end = parse_date(request.args.get("end"))
    if start and end and start > end:
        raise ValueError("start must not be after end")
    return start, end


@reports_bp.route("/dashboard", methods=["GET"])
@login_required
def dashboard():
    institute_id = current_institute_id()
    return api_success({
        "stats": services.dashboard_stats(institute_id),
        "topClasses": services.top_classes(institute_id),
        "overdue": overdue_payments(),
    })


@reports_bp.route("/financial", methods=["GET"])
@login_required
@role_required("admin", "staff")
def financial():
    try:
        start, end = _range()
    except ValueError as e:
        return api_error("invalid_date", str(e), 400)
    data = services.financial_report(current_institute_id(), start, end)
    return api_success(data, {"start": start.isoformat() if start else None, "end": end.isoformat() if end else None})


@reports_bp.route("/attendance", methods=["GET"])
@login_required
def attendance():
    try:
        start, end = _range()
    except ValueError as e:
        return api_error("invalid_date", str(e), 400)
    data = services.attendance_report(current_institute_id(), start, end)
    return api_success(data, {"start": start.isoformat() if start else None, "end": end.isoformat() if end else None})


@reports_bp.route("/academic", methods=["GET"])
@login_required
def academic():
    try:
        start, end = _range()
    except ValueError as e:
        return api_error("invalid_date", str(e), 400)
    data = services.academic_report(current_institute_id(), start, end)
    return api_success(data, {"start": start.isoformat() if start else None, "end": end.isoformat() if end else None})
