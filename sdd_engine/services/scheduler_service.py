"""
Workflow & Knowledge State Engine
Scheduler Service.

Periodic engine work (system health snapshots) is registered here with a
cadence. Whatever owns the clock (cron, a worker loop, the ops endpoint)
either runs one job by name or calls ``run_due()`` to run every job whose
cadence has elapsed since its last successful run. Job failures end up in
the outcome dict and are logged; they never propagate to the caller.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from flask import Flask

logger = logging.getLogger(__name__)


_job_registry: dict[str, Callable] = {}
_job_cadence: dict[str, timedelta] = {}


def register_job(name: str, every: timedelta = timedelta(days=1)):
    """Register ``fn(app)`` as job ``name`` to run once per ``every``."""
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        _job_cadence[name] = every
        return fn
    return decorator


def _describe(name: str, fn: Callable) -> str:
    doc = (fn.__doc__ or "").strip()
    return doc.splitlines()[0] if doc else name


class SchedulerService:
    """Runs registered jobs inside the app context and keeps their last outcome."""

    _app: Flask | None = None
    _last_runs: dict[str, dict] = {}

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        cls._last_runs = {}
        app.extensions["scheduler"] = cls
        logger.info("Scheduler ready: %s", ", ".join(sorted(_job_registry)) or "no jobs")

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with job_name, status (success/failed/error), duration_ms,
            ran_at, result and error.
        """
        fn = _job_registry.get(job_name)
        if fn is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        ran_at = datetime.now(timezone.utc)
        started = time.monotonic()
        try:
            with cls._app.app_context():
                result, error = fn(cls._app), None
        except Exception as exc:
            result, error = None, str(exc)
            logger.exception("Job %s failed", job_name)

        outcome = {
            "job_name": job_name,
            "status": "failed" if error is not None else "success",
            "duration_ms": int((time.monotonic() - started) * 1000),
            "ran_at": ran_at.isoformat(),
            "result": result,
            "error": error,
        }
        cls._last_runs[job_name] = outcome
        return outcome

    @classmethod
    def next_due(cls, job_name: str) -> datetime | None:
        """When the job is next due; None means it has never succeeded and is due now."""
        last = cls._last_runs.get(job_name)
        if not last or last["status"] != "success":
            return None
        cadence = _job_cadence.get(job_name, timedelta(days=1))
        return datetime.fromisoformat(last["ran_at"]) + cadence

    @classmethod
    def run_due(cls, now: datetime | None = None) -> list[dict]:
        """Run every job whose cadence has elapsed. Returns the outcomes in name order."""
        now = now or datetime.now(timezone.utc)
        outcomes = []
        for name in sorted(_job_registry):
            due = cls.next_due(name)
            if due is None or due <= now:
                outcomes.append(cls.run_job(name))
        return outcomes

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """All registered jobs with cadence, last outcome and next due time."""
        jobs = []
        for name, fn in sorted(_job_registry.items()):
            due = cls.next_due(name)
            cadence = _job_cadence.get(name, timedelta(days=1))
            jobs.append({
                "job_name": name,
                "description": _describe(name, fn),
                "every_hours": int(cadence.total_seconds() // 3600),
                "last_run": cls._last_runs.get(name),
                "next_due": due.isoformat() if due else None,
            })
        return jobs
