"""
Client Portal Workflow
Scheduled Jobs.

Jobs:
    - phase_time_elapsed_sweep: evaluates automation for every open project
      so time_elapsed rules fire without a triggering event
    - stuck_project_scan: reports open projects idle in one phase too long
"""

from __future__ import annotations

import logging
from typing import Any

from portal.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("phase_time_elapsed_sweep")
def sweep_time_elapsed(app) -> dict[str, Any]:
    """Evaluate automation rules for all open projects."""
    from portal.services import workflow_service
    from portal.services.automation_engine import sweep_open_projects

    summary = sweep_open_projects(on_advance=workflow_service.emit_automation_transition)
    return summary


@register_job("stuck_project_scan")
def scan_stuck_projects(app) -> dict[str, Any]:
    """Report open projects whose current phase exceeds the stuck threshold."""
    from portal.services.workflow_service import find_stuck_projects

    threshold = app.config.get("WORKFLOW_STUCK_THRESHOLD_DAYS", 7)
    stuck = find_stuck_projects(threshold)
    for item in stuck:
        logger.warning("Project stuck in %s for %d days (pending: %s)",
                       item["current_phase_key"], item["days_in_phase"],
                       ", ".join(item["pending_mandatory"]) or "none",
                       extra={"project_id": item["project_id"], "phase_key": item["current_phase_key"]})
    return {
        "threshold_days": threshold,
        "stuck_count": len(stuck),
        "project_ids": [item["project_id"] for item in stuck],
    }
