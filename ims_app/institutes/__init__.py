from flask import Blueprint

institutes_bp = Blueprint("institutes", __name__)

from . import routes  # noqa: E402,F401
