"""
Workflow & Knowledge State Engine
Scheduled Jobs.

Jobs:
    - system_health_daily: 7-day system health snapshot
    - system_health_monthly: 30-day system health snapshot
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sdd_engine.services import eval_service
from sdd_engine.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


def _snapshot(period_days: int) -> dict[str, Any]:
    snapshot = eval_service.compute_system_health(period_days, evaluated_by="scheduler")
    raised = [a for a in snapshot["alerts"] if a.get("alert_id")]
    logger.info(
        "System health %dd snapshot #%s: %.1f (%s), %d new alert(s)",
        period_days, snapshot["id"], snapshot["overall_health_score"], snapshot["health_status"], len(raised),
    )
    return {
        "eval_id": snapshot["id"],
        "period_days": period_days,
        "overall_health_score": snapshot["overall_health_score"],
        "health_status": snapshot["health_status"],
        "alerts_raised": len(raised),
    }


@register_job("system_health_daily", every=timedelta(days=1))
def system_health_daily(app) -> dict[str, Any]:
    """Compute the 7-day system health snapshot."""
    return _snapshot(7)


@register_job("system_health_monthly", every=timedelta(days=30))
def system_health_monthly(app) -> dict[str, Any]:
    """Compute the 30-day system health snapshot."""
    return _snapshot(30)
