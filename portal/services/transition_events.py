"""Synchronous pub/sub for phase-transition events.

The workflow core does not notify anyone itself. After every committed
transition the facade emits a ``TransitionEvent``; the notification module
(or anything else) subscribes here. Listener errors are logged and never
reach the caller that caused the transition.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionEvent:
    project_id: str
    from_phase_key: str | None
    to_phase_key: str
    transition_type: str
    is_override: bool
    transitioned_by: str
    reason: str | None = None
    history_id: int | None = None

    @classmethod
    def from_history(cls, row) -> "TransitionEvent":
        return cls(
            project_id=row.project_id,
            from_phase_key=row.from_phase_key,
            to_phase_key=row.to_phase_key,
            transition_type=row.transition_type,
            is_override=row.is_override,
            transitioned_by=row.transitioned_by,
            reason=row.reason,
            history_id=row.id,
        )

    def to_dict(self) -> dict:
        return asdict(self)


Listener = Callable[[TransitionEvent], None]


class TransitionEventBus:
    """Listeners are called in subscription order on the emitting thread."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._guard = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._guard:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._guard:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def emit(self, event: TransitionEvent) -> None:
        with self._guard:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Error in transition listener %r", listener,
                                 extra={"project_id": event.project_id,
                                        "from_phase": event.from_phase_key,
                                        "to_phase": event.to_phase_key})

    def clear(self) -> None:
        with self._guard:
            self._listeners.clear()


bus = TransitionEventBus()
