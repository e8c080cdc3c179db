"""
Alembic revision tests.

The suite builds its schema with create_all; these tests run the real
migration chain against a throwaway SQLite file and compare the result
with the model metadata.
"""

from pathlib import Path

import flask_migrate
from alembic.autogenerate import compare_metadata
from alembic.migration import MigrationContext
from flask import Flask
from sqlalchemy import inspect

from sdd_engine.models import db

MIGRATIONS_DIR = str(Path(__file__).resolve().parents[1] / "migrations")


def _migration_app(db_path):
    """Bare app bound to ``db_path``; no create_all, so only migrations build tables."""
    application = Flask(__name__)
    application.config.update(
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{db_path}",
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
    )
    db.init_app(application)
    flask_migrate.Migrate(application, db, directory=MIGRATIONS_DIR)
    return application


class TestInitialRevision:
    def test_upgrade_matches_models(self, tmp_path):
        application = _migration_app(tmp_path / "engine.db")

        with application.app_context():
            flask_migrate.upgrade(directory=MIGRATIONS_DIR)
            with db.engine.connect() as conn:
                drift = compare_metadata(MigrationContext.configure(conn), db.metadata)
                tables = set(inspect(conn).get_table_names())
            db.engine.dispose()

        assert drift == []
        assert {"features", "learnings", "eval_alerts", "alembic_version"} <= tables

    def test_downgrade_drops_engine_tables(self, tmp_path):
        application = _migration_app(tmp_path / "engine.db")

        with application.app_context():
            flask_migrate.upgrade(directory=MIGRATIONS_DIR)
            flask_migrate.downgrade(directory=MIGRATIONS_DIR, revision="base")
            with db.engine.connect() as conn:
                tables = set(inspect(conn).get_table_names())
            db.engine.dispose()

        assert tables <= {"alembic_version"}
