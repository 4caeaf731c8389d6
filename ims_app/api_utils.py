from datetime import date, datetime, time

from flask import jsonify, request, current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from . import db


def api_success(data=None, meta=None, status=200):
    body = {"success": True, "data": data if data is not None else {}, "meta": meta or {}}
    return jsonify(body), status


def api_error(code="error", message="", status=400):
    body = {"success": False, "error": {"code": code, "message": message}}
    return jsonify(body), status


def get_payload():
    """JSON body when present, otherwise the submitted form as a flat dict."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    out = {}
    for key in request.form.keys():
        values = request.form.getlist(key)
        out[key] = values if len(values) > 1 else values[0]
    return out


def parse_date(value):
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    # Accept full ISO timestamps as sent by browsers ("2025-03-01T00:00:00.000Z")
    return date.fromisoformat(s[:10])


def parse_time(value):
    if value in (None, ""):
        return None
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value).strip())


def parse_float(value):
    if value in (None, ""):
        return None
    return float(value)


def parse_int(value):
    if value in (None, ""):
        return None
    return int(value)


def parse_bool(value):
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def apply_fields(obj, data, fields, parsers=None):
    """Copy whitelisted keys from ``data`` onto ``obj``; returns changed keys."""
    parsers = parsers or {}
    changed = []
    for name in fields:
        if name not in data:
            continue
        value = data[name]
        if name in parsers:
            value = parsers[name](value)
        elif isinstance(value, str):
            value = value.strip() or None
        setattr(obj, name, value)
        changed.append(name)
    return changed


def commit_or_error(action):
    """Commit the request session; on failure roll back and return an error response.

    Returns ``None`` on success so callers can write
    ``err = commit_or_error("creating student"); if err: return err``.
    """
    try:
        db.session.commit()
        return None
    except IntegrityError as e:
        db.session.rollback()
        current_app.logger.warning("Integrity error while %s: %s", action, e.orig)
        return api_error("integrity_error", str(e.orig), 400)
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.exception("Database error while %s", action)
        return api_error("database_error", str(e), 500)
