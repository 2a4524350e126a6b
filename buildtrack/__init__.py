"""
BuildTrack
Flask Application Factory.

Usage:
    from buildtrack import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from buildtrack.config import config
from buildtrack.models import db
from buildtrack.middleware.logging_config import configure_logging
from buildtrack.middleware.rate_limiter import init_rate_limits
from buildtrack.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit — apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # instantiated so the production guard in ProductionConfig.__init__ runs
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from buildtrack.models import project as _project_models        # noqa: F401
    from buildtrack.models import work_item as _work_item_models    # noqa: F401
    from buildtrack.models import evidence as _evidence_models      # noqa: F401
    from buildtrack.models import email_log as _email_log_models    # noqa: F401

    # ── Auto-create tables outside production (migrations own prod schema) ──
    if config_name != "production":
        db_uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
        db_dir = os.path.dirname(db_uri[len("sqlite:///"):]) if db_uri.startswith("sqlite:///") else ""
        if db_dir and ":memory:" not in db_uri:
            os.makedirs(db_dir, exist_ok=True)
        with app.app_context():
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from buildtrack.blueprints.health_bp import health_bp
    from buildtrack.blueprints.progress_bp import progress_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(progress_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("check-overdue")
    def check_overdue_cmd():
        """Mark every project past its target date as overdue."""
        from buildtrack.services.project_status import check_overdue_projects
        count = check_overdue_projects()
        click.echo(f"Marked {count} project(s) overdue.")

    @app.cli.command("cleanup-orphans")
    @click.argument("project_id", type=int)
    def cleanup_orphans_cmd(project_id):
        """Delete tasks of PROJECT_ID whose parent phase no longer exists."""
        from buildtrack.services.progress_reconciler import cleanup_orphaned_tasks
        removed = cleanup_orphaned_tasks(project_id)
        click.echo(f"Removed {len(removed)} orphaned task(s).")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def payload_too_large(e):
        return {"error": e.description}, 413

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
