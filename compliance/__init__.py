"""
Compliance Engine
Flask Application Factory.

Usage:
    from compliance import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import json
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from compliance.config import config
from compliance.integrations.channel_gateway import LoggingChannelSender
from compliance.integrations.directory import StaticDirectory
from compliance.middleware.logging_config import configure_logging
from compliance.middleware.rate_limiter import init_rate_limits
from compliance.middleware.timing import init_request_timing
from compliance.models import db
from compliance.services.scheduler_service import SchedulerService
from compliance.utils.clock import SystemClock

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
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
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
    config_cls = config[config_name]
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

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

    # ── Engine collaborators (replaceable, e.g. in tests) ────────────────
    app.extensions["compliance"] = {
        "clock": SystemClock(),
        "sender": LoggingChannelSender(),
        "directory": StaticDirectory(),
    }

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from compliance.models import assignment, audit, checklist, reminder, scheduling  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if not app.config.get("TESTING"):
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except Exception as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from compliance.blueprints.compliance_bp import compliance_bp
    from compliance.blueprints.health_bp import health_bp

    app.register_blueprint(compliance_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("process-reminders")
    @click.option("--dry-run", is_flag=True, help="Evaluate the tick without writing or sending.")
    @click.option("--now", "now_str", default=None, help="Reference time (ISO 8601), default: now.")
    def process_reminders_cmd(dry_run, now_str):
        """Run one compliance scheduling tick (cycles, reminders, dispatch, escalation)."""
        from compliance.services.reminder_service import parse_datetime

        result = SchedulerService.run_job(
            "compliance_tick", now=parse_datetime(now_str), dry_run=dry_run,
        )
        click.echo(json.dumps(result, indent=2, default=str))
        if result["status"] not in ("success", "skipped"):
            raise SystemExit(1)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("compliance.services.scheduled_jobs")  # registers @register_job handlers
    SchedulerService.init_app(app)
    if not app.config.get("TESTING"):
        SchedulerService.ensure_jobs_registered()

    return app
