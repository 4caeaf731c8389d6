import json

from flask import request
from flask_login import current_user

from . import db
from .models import ActivityLog


def log_activity(action, entity_type, entity_id=None, description=None, metadata=None):
    """Stage an activity row on the request session; the caller commits."""
    try:
        ip = request.headers.get("X-Forwarded-For") or request.remote_addr
    except RuntimeError:
        ip = None
    entry = ActivityLog(
        user_id_fk=getattr(current_user, "user_id", None) if getattr(current_user, "is_authenticated", False) else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        description=description,
        metadata_json=json.dumps(metadata) if metadata else None,
        ip_address=ip,
    )
    db.session.add(entry)
    return entry
