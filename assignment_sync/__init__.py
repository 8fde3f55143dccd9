"""
External Assignment Sync
Flask Application Factory.

Usage:
    from assignment_sync import create_app
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

from assignment_sync.config import config
from assignment_sync.middleware.logging_config import configure_logging
from assignment_sync.middleware.rate_limiter import init_rate_limits
from assignment_sync.middleware.timing import init_request_timing
from assignment_sync.models import db
from assignment_sync.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
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
    default_limits=[],                     # no global limit; applied per route
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
    app.config.from_object(config[config_name])

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

    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    # ── Models and connectors (registration side effects) ────────────────
    from assignment_sync.models import sync as _sync_models  # noqa: F401
    import assignment_sync.integrations  # noqa: F401  (registers connectors)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from assignment_sync.blueprints import ALL_BLUEPRINTS

    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("poll-sources")
    @click.option("--owner", default=None, help="Only poll this owner's sources.")
    @click.option("--workers", default=None, type=int, help="Parallel accounts (default POLL_MAX_WORKERS).")
    def poll_sources_cmd(owner, workers):
        """Run one reconciliation cycle for every connected source."""
        from assignment_sync.services.reconciliation_service import run_all_cycles

        results = run_all_cycles(app, owner=owner, max_workers=workers)
        for r in results:
            if r.status == "success":
                click.echo(
                    f"{r.source_account_id}: polled={r.polled} pending={r.pending} "
                    f"resolved={r.resolved}"
                )
            else:
                click.echo(f"{r.source_account_id}: FAILED {r.code} {r.error}", err=True)
        failed = sum(1 for r in results if r.status != "success")
        logger.info("poll-sources finished accounts=%d failed=%d", len(results), failed)

    @app.cli.command("reap-orphans")
    def reap_orphans_cmd():
        """Delete mappings whose source account no longer exists."""
        from assignment_sync.services.source_account_service import reap_orphaned_mappings

        click.echo(f"Reaped {reap_orphaned_mappings()} orphaned mappings.")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, f"Not found: {request.path}")

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMIT, f"Too many requests: {e.description}")

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
