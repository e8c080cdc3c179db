"""
Rate limit wiring tests.

The session app runs with RATELIMIT_ENABLED=False, so these tests mount the
real blueprints on a bare app with its own Limiter and tight limits.
"""

import pytest
from flask import Flask
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from sdd_engine.blueprints.eval_bp import eval_bp
from sdd_engine.blueprints.feature_bp import feature_bp
from sdd_engine.blueprints.health_bp import health_bp
from sdd_engine.blueprints.learning_bp import learning_bp
from sdd_engine.middleware.rate_limiter import init_rate_limits
from sdd_engine.services.scheduler_service import SchedulerService


@pytest.fixture()
def limited_client():
    application = Flask(__name__)
    application.config.update(RATELIMIT_WRITE="2/minute", RATELIMIT_COMPUTE="1/minute")
    limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
    limiter.init_app(application)
    for bp in (health_bp, feature_bp, learning_bp, eval_bp):
        application.register_blueprint(bp)
    application.extensions["scheduler"] = SchedulerService
    init_rate_limits(application, limiter)
    return application.test_client()


class TestRateLimits:
    def test_writes_limited_per_blueprint(self, limited_client):
        codes = [
            limited_client.post("/api/v1/features", data="x", content_type="application/json").status_code
            for _ in range(3)
        ]
        assert codes == [400, 400, 429]

    def test_compute_limit_on_eval_writes(self, limited_client):
        first = limited_client.post("/api/v1/jobs/nope/run")
        second = limited_client.post("/api/v1/jobs/nope/run")

        assert first.status_code == 404
        assert second.status_code == 429

    def test_reads_not_limited(self, limited_client):
        codes = {limited_client.get("/api/v1/jobs").status_code for _ in range(5)}
        assert codes == {200}

    def test_health_exempt(self, limited_client):
        codes = {limited_client.get("/api/v1/health/ready").status_code for _ in range(5)}
        assert codes == {200}
