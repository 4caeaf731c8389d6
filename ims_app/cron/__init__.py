from flask import Blueprint

cron_bp = Blueprint("cron", __name__)

from . import routes  # noqa: E402,F401
