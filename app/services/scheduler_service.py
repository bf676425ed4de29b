"""
Scheduler Service.

Lightweight background job runner for the automation sweeps.

Architecture:
    - Jobs register themselves with ``@register_job(name)``
    - Each job has a ScheduledJob row holding its interval and last run
    - ``start(app)`` launches one daemon ticker thread that runs due jobs
    - ``stop()`` sets a stop event; sweeps poll ``should_stop()`` between
      records and finish the record in flight
    - Jobs can always be triggered manually through ``run_job`` / the API

Only one process should run the ticker (SCHEDULER_ENABLED). The sweeps are
claim-based, so running a job manually while the ticker runs it is safe.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Callable

from flask import Flask, has_app_context

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}

DEFAULT_SCHEDULES: dict[str, dict] = {
    "webhook_retry_sweep": {"seconds": 60, "description": "Every minute"},
    "approval_sweep": {"seconds": 3600, "description": "Hourly"},
}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("webhook_retry_sweep")
        def sweep_webhook_retries(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Job registry, persistence and execution.

    Jobs run inside the Flask app context and receive the app.
    """

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop_event = threading.Event()

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Bind the scheduler to the app; start the ticker if enabled."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))
        if app.config.get("SCHEDULER_ENABLED"):
            cls.start(app)

    @classmethod
    def _context(cls):
        return nullcontext() if has_app_context() else cls._app.app_context()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if not cls._app:
            return []

        created = []
        with cls._context():
            for name, fn in _job_registry.items():
                if ScheduledJob.query.filter_by(job_name=name).first():
                    continue
                schedule = DEFAULT_SCHEDULES.get(name, {"seconds": 300, "description": "Every 5 minutes"})
                job = ScheduledJob(
                    job_name=name,
                    description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                    schedule_type="interval",
                    schedule_config=dict(schedule),
                    status="active",
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    # ── Execution ────────────────────────────────────────────────────────

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        with cls._context():
            try:
                result = fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc)

            duration_ms = int((time.monotonic() - start) * 1000)
            job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job_record:
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def run_due_jobs(cls, now: datetime | None = None) -> list[dict]:
        """Run every enabled job whose interval has elapsed."""
        now = now or datetime.now(timezone.utc)
        with cls._context():
            due = [job.job_name for job in ScheduledJob.query.all()
                   if job.job_name in _job_registry and job.is_due(now)]
        results = []
        for name in due:
            if cls.should_stop():
                break
            results.append(cls.run_job(name))
        return results

    # ── Ticker ───────────────────────────────────────────────────────────

    @classmethod
    def start(cls, app: Flask | None = None) -> None:
        """Start the daemon ticker thread (no-op if already running)."""
        if app is not None:
            cls._app = app
        if cls._thread and cls._thread.is_alive():
            return
        cls._stop_event.clear()
        cls.ensure_jobs_registered()
        tick = int(cls._app.config.get("SCHEDULER_TICK_SECONDS", 30))
        cls._thread = threading.Thread(target=cls._loop, args=(tick,), name="automation-scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler ticker started (tick=%ss)", tick)

    @classmethod
    def _loop(cls, tick: int) -> None:
        while not cls._stop_event.wait(tick):
            try:
                cls.run_due_jobs()
            except Exception:
                logger.exception("Scheduler tick failed")

    @classmethod
    def stop(cls, timeout: float | None = None) -> None:
        """Signal running sweeps to stop and wait for the ticker to exit."""
        cls._stop_event.set()
        if cls._thread and cls._thread.is_alive():
            cls._thread.join(timeout)
        cls._thread = None
        logger.info("Scheduler stopped")

    @classmethod
    def should_stop(cls) -> bool:
        return cls._stop_event.is_set()

    @classmethod
    def is_running(cls) -> bool:
        return bool(cls._thread and cls._thread.is_alive())

    # ── Queries ──────────────────────────────────────────────────────────

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        """Get status of a specific job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record:
            return job_record.to_dict()
        return None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()
