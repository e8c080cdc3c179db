"""
Workflow & Knowledge State Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Engine tunables (confidence increments, propagation thresholds, health
bands) live here so a deployment can override them through environment
variables of the same name.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'sdd_engine_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _database_url(fallback):
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else fallback


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Rate limits (see middleware/rate_limiter.py); storage is memory:// unless
    # RATELIMIT_STORAGE_URI is set
    RATELIMIT_WRITE = os.getenv("RATELIMIT_WRITE", "60/minute")
    RATELIMIT_COMPUTE = os.getenv("RATELIMIT_COMPUTE", "20/minute")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Request timing
    SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "1000"))

    # ── Learning confidence ──────────────────────────────────────────────
    LEARNING_VALIDATION_INCREMENT = _env_float("LEARNING_VALIDATION_INCREMENT", 0.15)
    LEARNING_REFERENCE_INCREMENT = _env_float("LEARNING_REFERENCE_INCREMENT", 0.10)
    LEARNING_CONFIDENCE_CAP = _env_float("LEARNING_CONFIDENCE_CAP", 1.00)
    LEARNING_DEFAULT_CONFIDENCE = _env_float("LEARNING_DEFAULT_CONFIDENCE", 0.50)

    # ── Propagation ──────────────────────────────────────────────────────
    PROPAGATION_CONFIDENCE_THRESHOLD = _env_float("PROPAGATION_CONFIDENCE_THRESHOLD", 0.80)
    PROPAGATION_RELEVANCE_THRESHOLD = _env_float("PROPAGATION_RELEVANCE_THRESHOLD", 0.60)

    # ── Health scoring ───────────────────────────────────────────────────
    HIGH_CONFIDENCE_THRESHOLD = _env_float("HIGH_CONFIDENCE_THRESHOLD", 0.80)
    EXPECTED_MINUTES_BY_COMPLEXITY = {1: 60, 2: 180, 3: 480}
    HEALTHY_THRESHOLD = _env_float("HEALTHY_THRESHOLD", 70.0)
    CONCERNING_THRESHOLD = _env_float("CONCERNING_THRESHOLD", 50.0)
    THRASHING_RATE_CRITICAL = _env_float("THRASHING_RATE_CRITICAL", 15.0)
    DURATION_OVERRUN_FACTOR = _env_float("DURATION_OVERRUN_FACTOR", 2.0)


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # Flask-SQLAlchemy pins in-memory SQLite to a StaticPool
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _database_url(None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=5000",  # engine calls are sub-second
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
