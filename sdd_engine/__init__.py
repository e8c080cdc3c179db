"""
Workflow & Knowledge State Engine
Flask Application Factory.

Usage:
    from sdd_engine import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from sdd_engine.config import config
from sdd_engine.middleware.logging_config import configure_logging
from sdd_engine.middleware.rate_limiter import init_rate_limits
from sdd_engine.middleware.timing import init_request_timing
from sdd_engine.models import db

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
    default_limits=[],                     # per-blueprint limits, see middleware/rate_limiter.py
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI") or "memory://",
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
    # Instantiate so ProductionConfig can refuse to start without its env vars
    app.config.from_object(config[config_name]())

    # ── Structured logging (before anything else logs) ───────────────────
    configure_logging(app)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in \
            app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    init_request_timing(app)

    # ── Models (import so create_all sees every table) ───────────────────
    from sdd_engine.models import audit as _audit_models          # noqa: F401
    from sdd_engine.models import evals as _eval_models           # noqa: F401
    from sdd_engine.models import learning as _learning_models    # noqa: F401
    from sdd_engine.models import workflow as _workflow_models    # noqa: F401

    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except SQLAlchemyError as e:
            app.logger.warning("db.create_all() failed, run flask db upgrade: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from sdd_engine.blueprints.eval_bp import eval_bp
    from sdd_engine.blueprints.feature_bp import feature_bp
    from sdd_engine.blueprints.health_bp import health_bp
    from sdd_engine.blueprints.learning_bp import learning_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(feature_bp)
    app.register_blueprint(learning_bp)
    app.register_blueprint(eval_bp)
    init_rate_limits(app, limiter)

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND"}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Scheduler (import jobs to register them) ─────────────────────────
    importlib.import_module("sdd_engine.services.scheduled_jobs")  # registers @register_job handlers
    from sdd_engine.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    logger.info("SDD engine started (config=%s)", config_name)
    return app
