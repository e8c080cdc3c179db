"""
Rate limits for the engine API.

The Limiter instance is created in sdd_engine/__init__.py with no default
limits; this module attaches limits per blueprint once they are registered.

    - feature_bp / learning_bp writes:  RATELIMIT_WRITE   (default 60/minute)
    - eval_bp writes (scoring, jobs):   RATELIMIT_COMPUTE (default 20/minute)
    - reads:                            unlimited
    - health_bp:                        exempt

Limits are keyed by remote address. RATELIMIT_ENABLED=False (the testing
config) switches the limiter off without touching this wiring.
"""

import logging

logger = logging.getLogger(__name__)

WRITE_METHODS = ["POST", "PUT", "PATCH", "DELETE"]


def init_rate_limits(app, limiter):
    """Attach per-blueprint limits; call after the blueprints are registered."""
    write_limit = app.config.get("RATELIMIT_WRITE", "60/minute")
    compute_limit = app.config.get("RATELIMIT_COMPUTE", "20/minute")

    for bp_name in ("feature_bp", "learning_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(write_limit, methods=WRITE_METHODS)(bp)

    bp = app.blueprints.get("eval_bp")
    if bp:
        limiter.limit(compute_limit, methods=WRITE_METHODS)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    logger.debug("Rate limits attached: write=%s compute=%s", write_limit, compute_limit)
