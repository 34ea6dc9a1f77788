"""Flask application factory for the green hydrogen subsidy platform API."""
import atexit
import json
import os
from datetime import timezone
from typing import Optional

import click
from flask import Flask, g, jsonify, request
from flask_login import current_user
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import IntegrityError, OperationalError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from utils.errors import ApiError, AuthenticationError, DuplicateKeyError
from utils.logger import init_logging
from utils.security import (
    apply_cors_headers,
    apply_security_headers,
    bearer_token_from_request,
    decode_access_token,
    redact_sensitive,
)
from extensions import db, migrate, login_manager


def _error_response(message: str, status: int, details: Optional[dict] = None):
    error = {"message": message}
    if details:
        error["details"] = details
    return jsonify({"success": False, "error": error}), status


def _audit_failure(app: Flask, status: int, message: str) -> None:
    """Write the audit record for denied or failed requests; never masks the original error."""
    from utils.audit_logger import actor_from_user, log_security_event, record_event

    if g.get("failure_audited"):
        return
    user = current_user if current_user and current_user.is_authenticated else None
    request_info = {"method": request.method, "url": request.path}
    try:
        db.session.rollback()
        if status >= 500:
            request_info["body"] = redact_sensitive(request.get_json(silent=True))
            record_event(
                "system_error",
                action="read",
                resource_type="system",
                description=f"Server error on {request.method} {request.path}: {message}",
                category="error",
                severity="high",
                actor=actor_from_user(user),
                request_info=request_info,
                response_info={"statusCode": status},
            )
        elif status in (401, 403):
            log_security_event(
                "access_denied",
                f"Access denied to {request.method} {request.path}: {message}",
                user=user,
                severity="medium",
                request_info=request_info,
            )
    except Exception:
        db.session.rollback()
        app.logger.exception("Failed to write failure audit", extra={"status": status})


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def api_error(error: ApiError):
        level = app.logger.error if error.status_code >= 500 else app.logger.warning
        level(error.message, extra={"status": error.status_code, "error_type": type(error).__name__})
        _audit_failure(app, error.status_code, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(IntegrityError)
    def integrity_error(error: IntegrityError):
        db.session.rollback()
        app.logger.warning("Integrity violation", extra={"error": str(error.orig)})
        return api_error(DuplicateKeyError("Duplicate field value entered"))

    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException):
        app.logger.warning(f"{error.code} {error.name}", extra={"method": request.method})
        _audit_failure(app, error.code or 500, error.description or error.name)
        return _error_response(error.description or error.name, error.code or 500)

    @app.errorhandler(Exception)
    def unhandled_error(error: Exception):
        app.logger.exception("500 Internal Server Error")
        db.session.rollback()
        _audit_failure(app, 500, str(error))
        return _error_response("Server Error", 500)


def ensure_database_exists(database_uri: str) -> None:
    """Create the target database if it does not exist (PostgreSQL + SQLite support)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        # For SQLite just make sure the parent directory exists.
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        return

    if url.drivername.startswith("postgres"):
        db_name = url.database
        admin_url = url.set(database=os.getenv("POSTGRES_DB_ADMIN", "postgres"))
        engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": db_name}
                ).scalar()
                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        except OperationalError:
            # If we cannot connect/create, let the normal app startup fail loudly later.
            pass
        finally:
            engine.dispose()


def init_services(app: Flask) -> None:
    """Construct the single oracle, blockchain and scheduler instances for this process."""
    from utils.blockchain import BlockchainClient
    from utils.notification_scheduler import NotificationScheduler
    from utils.oracle_service import OracleService

    app.extensions["oracle_service"] = OracleService.from_config(app.config, logger=app.logger)
    app.extensions["blockchain_client"] = BlockchainClient.from_config(app.config, logger=app.logger)
    scheduler = NotificationScheduler(app)
    app.extensions["notification_scheduler"] = scheduler

    if app.config.get("SCHEDULER_ENABLED") and not app.testing:
        scheduler.start()
        atexit.register(scheduler.stop_all)
        app.logger.info("Notification scheduler started")


def register_cli(app: Flask) -> None:
    @app.cli.command("notifications-run")
    @click.argument("job")
    def notifications_run(job):
        """Run one scheduled notification job now (schedule this via cron)."""
        scheduler = app.extensions["notification_scheduler"]
        if job not in scheduler.jobs:
            raise click.BadParameter(f"choose from {', '.join(sorted(scheduler.jobs))}", param_hint="JOB")
        result = scheduler.run_job(job)
        click.echo(f"{job}: {result}")

    @app.cli.command("audit-purge")
    def audit_purge():
        """Delete audit records past their retention period."""
        result = app.extensions["notification_scheduler"].run_job("audit-purge")
        click.echo(f"Purged {result or 0} audit records")

    @app.cli.command("scheduler-status")
    def scheduler_status():
        """Print the registered scheduler jobs and their state."""
        click.echo(json.dumps(app.extensions["notification_scheduler"].job_status(), indent=2))


def create_app(config_name: Optional[str] = None) -> Flask:
    """Application factory with environment-aware configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    # Resolve configuration
    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())

    ensure_database_exists(app.config["SQLALCHEMY_DATABASE_URI"])

    # Optional instance-specific overrides
    if not app.testing:
        app.config.from_pyfile("config.py", silent=True)
    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize logging early
    logger = init_logging(app)
    app.logger = logger

    # Client addresses come from X-Forwarded-For only behind a known number of proxies.
    if app.config.get("TRUSTED_PROXY_COUNT"):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=app.config["TRUSTED_PROXY_COUNT"], x_proto=1)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    login_manager.session_protection = None

    @login_manager.request_loader
    def load_user_from_request(req):
        from models import User  # Local import to avoid circular dependency

        token = bearer_token_from_request()
        if not token:
            g.auth_error = "No token, authorization denied"
            return None
        try:
            claims = decode_access_token(token)
        except AuthenticationError as exc:
            g.auth_error = exc.message
            return None
        user = db.session.get(User, str(claims["sub"]))
        if user is None:
            g.auth_error = "User not found"
            return None
        if not user.is_active:
            g.auth_error = "User account is inactive"
            return None
        if user.is_locked:
            g.auth_error = "Account is temporarily locked"
            return None
        if user.password_changed_at and int(claims.get("iat", 0)) < int(
            user.password_changed_at.replace(tzinfo=timezone.utc).timestamp()
        ):
            g.auth_error = "Password recently changed. Please log in again"
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        raise AuthenticationError(g.get("auth_error") or "Authentication required")

    # Blueprints
    from routes import main_bp, auth_bp, projects_bp, milestones_bp, audit_bp

    app.register_blueprint(main_bp, url_prefix="/api")
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(projects_bp, url_prefix="/api/projects")
    app.register_blueprint(milestones_bp, url_prefix="/api/milestones")
    app.register_blueprint(audit_bp, url_prefix="/api/audit")

    # Error handlers
    register_error_handlers(app)

    # Request lifecycle hooks
    @app.before_request
    def _before_request():
        if request.method == "OPTIONS":
            return app.make_default_options_response()
        return None

    @app.after_request
    def _after_request(response):
        response = apply_cors_headers(response, app.config["CORS_ALLOWED_ORIGINS"])
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    register_cli(app)

    # Ensure tables exist so first run creates the database structure automatically.
    with app.app_context():
        db.create_all()

    init_services(app)

    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port, use_reloader=False)
