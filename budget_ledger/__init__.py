"""
Budget Variance Ledger
Flask Application Factory.

Usage:
    from budget_ledger import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from budget_ledger.config import config
from budget_ledger.middleware.logging_config import configure_logging
from budget_ledger.models import db

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
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    with app.app_context():
        from budget_ledger.models import ledger as _ledger_models  # noqa: F401

        if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and not app.testing:
            os.makedirs(app.instance_path, exist_ok=True)
        db.create_all()

    _register_cli(app)

    logger.debug("Application created (config=%s)", config_name)
    return app


def _register_cli(app):
    @app.cli.command("seed-categories")
    def seed_categories_cmd():
        """Insert the default cost categories that are missing."""
        from budget_ledger.services.estimate_service import seed_default_categories
        count = seed_default_categories()
        logger.info("Seeded %s new categories.", count)

    @app.cli.command("recompute-rollups")
    def recompute_rollups_cmd():
        """Recompute every item, estimate and site rollup from its children."""
        from budget_ledger.services.estimate_service import recompute_rollups
        counts = recompute_rollups()
        logger.info(
            "Recomputed %(line_items)s line items, %(estimates)s estimates, %(sites)s sites.",
            counts,
        )
