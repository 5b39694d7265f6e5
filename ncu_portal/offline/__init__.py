from flask import Blueprint

offline_api_bp = Blueprint("offline_api", __name__, url_prefix="/offline/api")

from . import api  # noqa: E402,F401
