from flask import Blueprint

teachers_bp = Blueprint("teachers", __name__)

from . import routes  # noqa: E402,F401
