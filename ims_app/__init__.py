import os
import secrets
import time
from datetime import timedelta
from functools import wraps

from flask import Flask, session, request, current_app
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_limiter import Limiter
from flask_limiter.errors import RateLimitExceeded
from flask_caching import Cache
from werkzeug.exceptions import HTTPException

# Global extensions
db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()


def _rate_key():
    try:
        ip = (request.headers.get("X-Forwarded-For") or request.remote_addr or "local")
        token = (session.get("rlid") or "")
        path = (getattr(request, "path", "/") or "/")
        return f"{ip}|{token}|{path}"
    except Exception:
        return "local"


limiter = Limiter(key_func=_rate_key)
cache = Cache()


def _env_flag(name, default="false"):
    return (os.environ.get(name, default) or "").strip().lower() == "true"


def create_app(test_config=None):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key")
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO").upper()

    REDIS_URL = os.environ.get("REDIS_URL")
    if REDIS_URL:
        app.config["CACHE_TYPE"] = "RedisCache"
        app.config["CACHE_REDIS_URL"] = REDIS_URL
        app.config["RATELIMIT_STORAGE_URI"] = REDIS_URL
    else:
        app.config["CACHE_TYPE"] = "SimpleCache"
    app.config["RATELIMIT_ENABLED"] = _env_flag("RATELIMIT_ENABLED", "true")
    # CSRF token TTL (seconds)
    app.config["CSRF_TOKEN_TTL"] = int(os.environ.get("CSRF_TOKEN_TTL", "7200"))

    # Scheduled jobs
    app.config["CRON_SECRET"] = os.environ.get("CRON_SECRET")
    app.config["FEE_DUE_DAY"] = int(os.environ.get("FEE_DUE_DAY", "5"))
    app.config["REMINDER_SEND_DELAY"] = float(os.environ.get("REMINDER_SEND_DELAY", "0.5"))

    # Mail configuration (SMTP relay or Resend HTTP API; both optional)
    app.config["MAIL_HOST"] = os.environ.get("MAIL_HOST")
    app.config["MAIL_PORT"] = int(os.environ.get("MAIL_PORT", "587"))
    app.config["MAIL_USER"] = os.environ.get("MAIL_USER")
    app.config["MAIL_PASSWORD"] = os.environ.get("MAIL_PASSWORD")
    app.config["MAIL_FROM"] = os.environ.get("MAIL_FROM", os.environ.get("MAIL_USER", "noreply@example.com"))
    app.config["MAIL_USE_TLS"] = _env_flag("MAIL_USE_TLS", "true")
    app.config["MAIL_USE_SSL"] = _env_flag("MAIL_USE_SSL", "false")
    app.config["RESEND_API_KEY"] = os.environ.get("RESEND_API_KEY")
    app.config["RESEND_FROM_EMAIL"] = os.environ.get("RESEND_FROM_EMAIL", "noreply@example.com")

    # SMS configuration (Twilio; optional)
    app.config["TWILIO_ACCOUNT_SID"] = os.environ.get("TWILIO_ACCOUNT_SID")
    app.config["TWILIO_AUTH_TOKEN"] = os.environ.get("TWILIO_AUTH_TOKEN")
    app.config["TWILIO_PHONE_NUMBER"] = os.environ.get("TWILIO_PHONE_NUMBER")
    app.config["TWILIO_WHATSAPP_NUMBER"] = os.environ.get("TWILIO_WHATSAPP_NUMBER")

    # Database configuration: use DATABASE_URL if provided, else sqlite file
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        db_path = os.path.join(os.path.dirname(__file__), "..", "ims.db")
        database_url = f"sqlite:///{os.path.abspath(db_path)}"
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    # Privileged connection used only by scheduled jobs and admin mutations
    app.config["SERVICE_DATABASE_URL"] = os.environ.get("SERVICE_DATABASE_URL")

    if test_config:
        app.config.update(test_config)

    service_url = app.config.get("SERVICE_DATABASE_URL")
    if service_url and "SQLALCHEMY_BINDS" not in app.config:
        app.config["SQLALCHEMY_BINDS"] = {"service": service_url}

    app.logger.setLevel(app.config["LOG_LEVEL"])

    app.config.setdefault("RATELIMIT_STORAGE_URI", "memory://")
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cache.init_app(app)

    login_manager.init_app(app)

    # Import models so they are registered with SQLAlchemy
    from . import models  # noqa: F401

    @app.before_request
    def ensure_rate_key():
        if not session.get("rlid"):
            session["rlid"] = secrets.token_urlsafe(16)

    @login_manager.user_loader
    def load_user(user_id: str):
        from .models import User
        try:
            user = db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None
        if user is not None and not user.is_active:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        from .api_utils import api_error
        return api_error("unauthorized", "Login required", 401)

    # Blueprints
    from .auth import auth_bp
    app.register_blueprint(auth_bp, url_prefix="/auth")

    from .institutes import institutes_bp
    app.register_blueprint(institutes_bp, url_prefix="/institutes")

    from .students import students_bp
    app.register_blueprint(students_bp, url_prefix="/students")

    from .classes import classes_bp, sessions_bp
    app.register_blueprint(classes_bp, url_prefix="/classes")
    app.register_blueprint(sessions_bp, url_prefix="/sessions")

    from .teachers import teachers_bp
    app.register_blueprint(teachers_bp, url_prefix="/teachers")

    from .attendance import attendance_bp
    app.register_blueprint(attendance_bp, url_prefix="/attendance")

    from .assessments import assessments_bp
    app.register_blueprint(assessments_bp, url_prefix="/assessments")

    from .tutorials import tutorials_bp
    app.register_blueprint(tutorials_bp, url_prefix="/tutorials")

    from .communications import communications_bp
    app.register_blueprint(communications_bp, url_prefix="/communications")

    from .payments import payments_bp
    app.register_blueprint(payments_bp, url_prefix="/payments")

    from .reports import reports_bp
    app.register_blueprint(reports_bp, url_prefix="/reports")

    from .cron import cron_bp
    app.register_blueprint(cron_bp, url_prefix="/cron")

    from .cli import fees_cli
    app.cli.add_command(fees_cli)

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(e):
        from .api_utils import api_error
        return api_error("rate_limited", "Too many requests", 429)

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        from .api_utils import api_error
        return api_error(str(e.code), e.description or "", e.code)

    # Create tables on first run (dev convenience); production uses migrations
    with app.app_context():
        db.create_all()

    return app


def issue_csrf_token(force=False):
    """Return the session CSRF token, minting a new one when missing or expired."""
    token = session.get("csrf_token")
    issued_at = session.get("csrf_token_issued_at")
    ttl = current_app.config.get("CSRF_TOKEN_TTL", 7200)
    now = int(time.time())
    if force or (not token) or (not issued_at) or (ttl > 0 and (now - int(issued_at)) > ttl):
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
        session["csrf_token_issued_at"] = now
    return token


def csrf_required(view_func):
    @wraps(view_func)
    def _wrapped(*args, **kwargs):
        from .api_utils import api_error
        method = (request.method or "GET").upper()
        if method in ("POST", "PUT", "PATCH", "DELETE"):
            token = (request.headers.get("X-CSRF-Token") or request.form.get("csrf_token") or "").strip()
            sess_token = (session.get("csrf_token") or "")
            issued_at = session.get("csrf_token_issued_at")
            ttl = current_app.config.get("CSRF_TOKEN_TTL", 7200)
            now = int(time.time())
            # Expired token
            if not issued_at or (ttl > 0 and (now - int(issued_at)) > ttl):
                return api_error("csrf_expired", "Refresh the page or login again", 400)
            # Missing or mismatched token
            if not token or not secrets.compare_digest(token, sess_token):
                return api_error("csrf_invalid", "Refresh the page or login again", 400)
        return view_func(*args, **kwargs)
    return _wrapped
