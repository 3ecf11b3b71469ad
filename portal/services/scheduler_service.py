"""
Client Portal Workflow
Scheduler Service.

Lightweight job registry for the workflow sweeps. Job functions register
themselves with ``@register_job``; each registered job gets a persisted
ScheduledJob row holding its schedule and run history.

An external trigger (cron, platform scheduler, ``flask run-workflow-sweep``)
or the manual API endpoint calls ``SchedulerService.run_job``. Jobs run in
their own application context, so they use their own DB session.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from flask import Flask, current_app, has_app_context

from portal.core.exceptions import NotFoundError
from portal.models import db
from portal.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("phase_time_elapsed_sweep")
        def sweep(app):
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
    """Job persistence and execution, bound to one Flask app."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        # Job functions register on import
        from portal.services import scheduled_jobs  # noqa: F401

        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create missing ScheduledJob rows for registered jobs."""
        created = []
        for name, fn in _job_registry.items():
            if ScheduledJob.query.filter_by(job_name=name).first():
                continue
            job = ScheduledJob(
                job_name=name,
                description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                schedule_type="cron",
                schedule_config=_get_default_schedule(name),
                status="active",
                is_enabled=True,
            )
            db.session.add(job)
            created.append(job)
        if created:
            db.session.commit()
            logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with job_name, status, duration_ms, result and error.

        Raises:
            NotFoundError: no job registered under ``job_name``.
        """
        fn = _job_registry.get(job_name)
        if fn is None:
            raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
        app = current_app._get_current_object() if has_app_context() else cls._app
        if app is None:
            raise RuntimeError("SchedulerService.init_app() has not been called")

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with app.app_context():
                result = fn(app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with app.app_context():
                cls.ensure_jobs_registered()
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name, extra={"job_name": job_name})

        logger.info("Job %s finished: %s in %dms", job_name, status, duration_ms,
                    extra={"job_name": job_name, "duration_ms": duration_ms})
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """Registered jobs with their persisted status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs


def _get_default_schedule(job_name: str) -> dict:
    """Return default schedule config for known job types."""
    defaults = {
        "phase_time_elapsed_sweep": {"hour": "*", "minute": "0", "description": "Hourly"},
        "stuck_project_scan": {"hour": "8", "minute": "0", "description": "Daily at 08:00"},
    }
    return defaults.get(job_name, {"hour": "0", "minute": "0", "description": "Daily at midnight"})
