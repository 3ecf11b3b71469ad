"""
Per-project mutual exclusion for workflow mutations.

``project_transaction(project_id)`` is the unit of atomicity for every
mutating tracker operation: read state, decide, write state, append
history. Two layers:

    1. An in-process re-entrant lock keyed by project id. Serialises the
       request threads of one worker (and is the only serialisation SQLite
       gets). Waiting is bounded by WORKFLOW_LOCK_TIMEOUT_SECONDS. An entry
       exists only while some thread holds or waits on it.
    2. ``SELECT ... FOR UPDATE`` on the tracking row, issued by the tracker
       inside the scope. Serialises workers on PostgreSQL; a lock_timeout
       surfaces as OperationalError and is reported as
       ConcurrentModificationError.

The outermost scope commits on success and rolls back on any exception.
Nested scopes for the same project (automation → advance) join the outer
transaction. Different projects never block each other.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import OperationalError

from portal.core.exceptions import ConcurrentModificationError
from portal.models import db

logger = logging.getLogger(__name__)

_registry_guard = threading.Lock()
_locks: dict[str, _ProjectLock] = {}
_local = threading.local()


class _ProjectLock:
    """Re-entrant lock plus the number of threads holding or waiting on it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


@contextmanager
def _hold_project_lock(project_id: str, timeout: float):
    """Acquire the project's lock; the registry entry is dropped when the
    last holder or waiter leaves."""
    with _registry_guard:
        entry = _locks.get(project_id)
        if entry is None:
            entry = _locks[project_id] = _ProjectLock()
        entry.users += 1

    acquired = entry.lock.acquire(timeout=timeout)
    try:
        if not acquired:
            logger.warning("Project lock wait timed out after %.1fs", timeout,
                           extra={"project_id": project_id})
            raise ConcurrentModificationError(project_id, "lock wait timed out")
        yield
    finally:
        if acquired:
            entry.lock.release()
        with _registry_guard:
            entry.users -= 1
            if entry.users == 0:
                del _locks[project_id]


def _depths() -> dict[str, int]:
    depths = getattr(_local, "depths", None)
    if depths is None:
        depths = _local.depths = {}
    return depths


def in_project_transaction(project_id: str) -> bool:
    """True when the current thread already holds the project's scope."""
    return _depths().get(project_id, 0) > 0


@contextmanager
def project_transaction(project_id: str):
    """Serialise and atomically commit one logical transition of a project."""
    timeout = float(current_app.config.get("WORKFLOW_LOCK_TIMEOUT_SECONDS", 5))
    with _hold_project_lock(project_id, timeout):
        depths = _depths()
        outermost = depths.get(project_id, 0) == 0
        depths[project_id] = depths.get(project_id, 0) + 1
        try:
            if outermost:
                # Another thread may have committed since this session last read
                db.session.expire_all()
            yield
            if outermost:
                db.session.commit()
        except OperationalError as exc:
            if outermost:
                db.session.rollback()
            logger.warning("Database rejected project transaction: %s", exc.orig,
                           extra={"project_id": project_id})
            raise ConcurrentModificationError(project_id, "row lock not available") from exc
        except BaseException:
            if outermost:
                db.session.rollback()
            raise
        finally:
            depths[project_id] -= 1
            if depths[project_id] == 0:
                del depths[project_id]
