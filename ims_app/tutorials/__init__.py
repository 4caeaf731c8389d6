from flask import Blueprint

tutorials_bp = Blueprint("tutorials", __name__)

from . import routes  # noqa: E402,F401
