"""
Client Portal Workflow
Flask Application Factory.

Usage:
    from portal import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from portal.config import config
from portal.middleware.logging_config import configure_logging
from portal.middleware.rate_limiter import init_rate_limits
from portal.middleware.timing import init_request_timing
from portal.models import db

logger = logging.getLogger(__name__)


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
    default_limits=[],                     # no global limit - apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None, config_overrides=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        config_overrides: Optional mapping applied after the config class,
                     before any extension is initialised.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    if config_overrides:
        app.config.update(config_overrides)

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

    # ── Import all models so Alembic can detect them ─────────────────────
    from portal.models import scheduling as _scheduling_models  # noqa: F401
    from portal.models import workflow as _workflow_models      # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) + default catalog ──────
    db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]) or ".", exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

        if app.config.get("WORKFLOW_SEED_ON_STARTUP"):
            from portal.services.catalog_seed import seed_default_catalog
            try:
                seed_default_catalog()
            except Exception as e:
                db.session.rollback()
                app.logger.warning("Workflow catalog seed failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from portal.blueprints.automation_bp import automation_bp
    from portal.blueprints.health_bp import health_bp
    from portal.blueprints.phase_catalog_bp import phase_catalog_bp
    from portal.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(phase_catalog_bp)
    app.register_blueprint(automation_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflow-catalog")
    def seed_workflow_catalog_cmd():
        """Insert missing default phases, service types, requirements and rules."""
        from portal.services.catalog_seed import seed_default_catalog
        counts = seed_default_catalog()
        click.echo(f"Seeded workflow catalog: {counts}")

    @app.cli.command("run-workflow-sweep")
    @click.option("--job", "job_name", default="phase_time_elapsed_sweep", show_default=True,
                  help="Registered job to run.")
    def run_workflow_sweep_cmd(job_name):
        """Run a workflow sweep job once (for cron / platform schedulers)."""
        from portal.services.scheduler_service import SchedulerService
        result = SchedulerService.run_job(job_name)
        click.echo(f"{result['job_name']}: {result['status']} in {result['duration_ms']}ms {result['result']}")
        if result["status"] != "success":
            raise SystemExit(1)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (imports jobs to register them) ─────────
    from portal.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app
