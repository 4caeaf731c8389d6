from flask import Blueprint

communications_bp = Blueprint("communications", __name__)

from . import routes  # noqa: E402,F401
