"""
Access Certification Engine
Flask Application Factory.

Usage:
    from accesscert import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config

The factory binds the database, logging and CLI commands. There are no
HTTP routes; callers use the service modules under ``accesscert.services``
inside an application context.
"""

import json
import logging
import os

import click
from flask import Flask
from flask_migrate import Migrate

from accesscert.config import config
from accesscert.core.logging_config import configure_logging
from accesscert.models import db

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine  # noqa: E402


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


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
    # ProductionConfig validates required env vars on instantiation
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Import all models so Alembic can detect them ─────────────────────
    from accesscert.models import organization as _organization_models  # noqa: F401
    from accesscert.models import access as _access_models              # noqa: F401
    from accesscert.models import campaign as _campaign_models          # noqa: F401
    from accesscert.models import sod as _sod_models                    # noqa: F401
    from accesscert.models import audit as _audit_models                # noqa: F401
    from accesscert.models import notification as _notification_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if config_name != "production":
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()

    # ── Job registry (import registers @register_job handlers) ──────────
    from accesscert.services import jobs as _jobs

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("recalculate-stats")
    @click.argument("campaign_id", type=int)
    def recalculate_stats_cmd(campaign_id):
        """Recompute a campaign's counters and reviewer progress from its items."""
        from accesscert.services.stats_service import recalculate_campaign_stats
        stats = recalculate_campaign_stats(campaign_id)
        click.echo(json.dumps(stats, default=str))

    @app.cli.command("detect-sod")
    @click.argument("organization_id", type=int)
    @click.argument("user_id", type=int)
    def detect_sod_cmd(organization_id, user_id):
        """Run SOD detection for one user."""
        from accesscert.services.sod_engine import detect_violations
        violations = detect_violations(organization_id, user_id)
        click.echo(json.dumps([v.to_dict() for v in violations], default=str))

    @app.cli.command("run-job")
    @click.argument("job_name")
    @click.option("--campaign-id", type=int, default=None,
                  help="Run for one campaign; defaults to every active campaign.")
    def run_job_cmd(job_name, campaign_id):
        """Run a registered job (campaign_reminders, review_escalation)."""
        result = _jobs.run_job(job_name, campaign_id=campaign_id)
        click.echo(json.dumps(result, default=str))
        if result["status"] != "success":
            raise SystemExit(1)

    logger.debug("Application created (config=%s, jobs=%s)",
                  config_name, sorted(_jobs.get_registered_jobs()))
    return app
