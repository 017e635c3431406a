"""In-process pub/sub event bus for task and workflow-run events.

Subscribers are plain callables (sync or async) taking ``(event, data)``.
The bus snapshots the subscriber list before iterating so that callbacks
added during emit don't cause mutation issues.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

# ── Well-known event names ─────────────────────────────────────────────────
EVENT_TASK_CREATED        = "task.created"
EVENT_TASK_UPDATED        = "task.updated"
EVENT_TASK_STATUS_CHANGED = "task.status.changed"

EVENT_RUN_STARTED        = "workflow.run.started"
EVENT_RUN_COMPLETED      = "workflow.run.completed"
EVENT_RUN_FAILED         = "workflow.run.failed"
EVENT_RUN_CANCELLED      = "workflow.run.cancelled"
EVENT_RUN_STEP_STARTED   = "workflow.run.step.started"
EVENT_RUN_STEP_COMPLETED = "workflow.run.step.completed"
EVENT_RUN_STEP_FAILED    = "workflow.run.step.failed"

WILDCARD = "*"


class EventBus:
    """Lightweight, in-process pub/sub bus.

    Usage::

        bus = EventBus()
        bus.subscribe("task.status.changed", my_handler)
        await bus.emit("task.status.changed", task_event)

    Handlers registered under ``"*"`` receive every event.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable]] = {}

    def subscribe(self, event: str, callback: Callable) -> Callable[[], None]:
        """Register *callback* for *event* and return a function that removes it."""
        self._subscribers.setdefault(event, []).append(callback)
        return lambda: self.unsubscribe(event, callback)

    def unsubscribe(self, event: str, callback: Callable) -> None:
        """Remove the first occurrence of *callback* from *event*.  Silently ignores missing."""
        callbacks = self._subscribers.get(event, [])
        try:
            callbacks.remove(callback)
        except ValueError:
            pass

    def subscriber_count(self, event: str) -> int:
        return len(self._subscribers.get(event, []))

    async def emit(self, event: str, data: Any = None) -> None:
        """Emit *event* to all subscribers, passing ``(event, data)``.

        Exceptions raised by individual subscribers are logged and swallowed so
        that one failing handler cannot block the rest.
        """
        # Snapshot prevents mutation bugs if a callback subscribes/unsubscribes
        callbacks = list(self._subscribers.get(event, []))
        if event != WILDCARD:
            callbacks += list(self._subscribers.get(WILDCARD, []))
        for cb in callbacks:
            try:
                result = cb(event, data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("EventBus subscriber raised for event=%r", event)
