"""
Flask-Migrate / Alembic entry point.

Usage:
    flask --app wsgi db upgrade              # apply the engine schema
    flask --app wsgi db migrate -m "description"
    gunicorn wsgi:app
"""

from sdd_engine import create_app

app = create_app()
