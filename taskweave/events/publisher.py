"""Builds and publishes WorkflowRunEvent snapshots on the EventBus."""

from __future__ import annotations

import logging
from typing import Optional

from taskweave.core.ids import event_id
from taskweave.events.event_bus import EventBus
from taskweave.types import ActorType, WorkflowRun, WorkflowRunEvent, WorkflowRunEventType

logger = logging.getLogger(__name__)


class RunEventPublisher:

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    async def publish(
        self,
        event_type: WorkflowRunEventType,
        run: WorkflowRun,
        step_id: Optional[str] = None,
        task_id: Optional[str] = None,
        error: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> WorkflowRunEvent:
        event = WorkflowRunEvent(
            id=event_id(),
            type=event_type,
            workflow_run_id=run.id,
            run=run,
            step_id=step_id,
            task_id=task_id,
            error=error,
            actor_id=actor_id,
            actor_type=ActorType.USER if actor_id else ActorType.SYSTEM,
        )
        logger.debug("[Events] %s run=%s step=%s", event_type.value, run.id, step_id)
        await self._bus.emit(event_type.value, event)
        return event
