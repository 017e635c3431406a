"""
Task Materializer — creates and mutates Task records in the document store.

Tasks are the engine's persisted working state.  Status changes go through
``transition`` which enforces the task state machine and writes
conditionally on the status it read, so concurrent writers cannot move a
task twice.  Terminal tasks are only rewritten by ``force=True`` callers
(the administrative join rerun).

TaskService is the minimal task-management surface: the place where agents
and humans complete work, and the source of ``task.status.changed`` events.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from taskweave.core.ids import event_id
from taskweave.db.store import TASKS, DocumentStore
from taskweave.events.event_bus import EventBus
from taskweave.exceptions import InvalidTaskTransition, TaskNotFound
from taskweave.types import (
    TASK_TRANSITIONS, ActorType, CallbackRequest, FieldChange, Task, TaskEvent,
    TaskEventType, TaskStatus,
)

logger = logging.getLogger(__name__)

NON_TERMINAL = [TaskStatus.PENDING.value, TaskStatus.WAITING.value, TaskStatus.IN_PROGRESS.value]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _metadata_set(metadata: Optional[dict[str, Any]]) -> dict[str, Any]:
    return {f"metadata.{key}": value for key, value in (metadata or {}).items()}


class TaskMaterializer:
    """Task persistence plus the status state machine."""

    def __init__(self, store: DocumentStore, bus: EventBus) -> None:
        self._store = store
        self._bus = bus

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def find(self, task_id: str) -> Optional[Task]:
        doc = await self._store.get(TASKS, task_id)
        return Task.model_validate(doc) if doc else None

    async def get(self, task_id: str) -> Task:
        """
        Raises:
            TaskNotFound: if no such task exists.
        """
        task = await self.find(task_id)
        if task is None:
            raise TaskNotFound(f"Task '{task_id}' not found.", task_id=task_id)
        return task

    async def query(self, flt: dict[str, Any], sort: Optional[list] = None) -> list[Task]:
        docs = await self._store.find(TASKS, flt, sort=sort or [("created_at", 1)])
        return [Task.model_validate(d) for d in docs]

    async def latest(self, flt: dict[str, Any]) -> Optional[Task]:
        """Most recently created task matching *flt* (insertion order breaks ties)."""
        tasks = await self.query(flt)
        return tasks[-1] if tasks else None

    async def children(self, parent_id: str) -> list[Task]:
        return await self.query({"parent_id": parent_id})

    async def run_tasks(self, run_id: str) -> list[Task]:
        return await self.query({"workflow_run_id": run_id})

    # ── Writes ────────────────────────────────────────────────────────────────

    async def create(self, task: Task) -> Task:
        await self._store.insert(TASKS, task.model_dump(mode="json"))
        logger.debug("[Tasks] Created %s (%s) step=%s status=%s",
                     task.id, task.task_type.value, task.workflow_step_id, task.status.value)
        return task

    async def update(
        self,
        task_id: str,
        fields: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
        inc: Optional[dict[str, int]] = None,
        force: bool = False,
    ) -> Optional[Task]:
        """Patch non-status fields; skipped (None) for terminal tasks unless *force*."""
        flt: dict[str, Any] = {"id": task_id}
        if not force:
            flt["status"] = {"$in": NON_TERMINAL}
        update: dict[str, Any] = {"$set": {**(fields or {}), **_metadata_set(metadata), "updated_at": _now()}}
        if inc:
            update["$inc"] = inc
        doc = await self._store.update(TASKS, flt, update)
        return Task.model_validate(doc) if doc else None

    async def transition(
        self,
        task_id: str,
        status: TaskStatus,
        metadata: Optional[dict[str, Any]] = None,
        fields: Optional[dict[str, Any]] = None,
        publish: bool = False,
        actor_id: Optional[str] = None,
        force: bool = False,
    ) -> Task:
        """
        Move a task to *status*, merging *metadata* into its metadata map.

        With ``publish=True`` a ``task.status.changed`` event is emitted after
        the write, which is what drives advancement.

        Raises:
            TaskNotFound: unknown task.
            InvalidTaskTransition: the state machine forbids the move, or a
                concurrent writer moved the task first.
        """
        task = await self.get(task_id)
        old = task.status
        if not force and status not in TASK_TRANSITIONS[old]:
            raise InvalidTaskTransition(
                f"Task '{task_id}' cannot move from {old.value} to {status.value}.",
                from_status=old.value, to_status=status.value,
            )
        flt: dict[str, Any] = {"id": task_id}
        if not force:
            flt["status"] = old.value
        doc = await self._store.update(TASKS, flt, {
            "$set": {**(fields or {}), **_metadata_set(metadata), "status": status.value, "updated_at": _now()},
        })
        if doc is None:
            current = await self.get(task_id)
            raise InvalidTaskTransition(
                f"Task '{task_id}' changed concurrently to {current.status.value}.",
                from_status=current.status.value, to_status=status.value,
            )
        updated = Task.model_validate(doc)
        logger.info("[Tasks] %s %s → %s", task_id, old.value, status.value)
        if publish:
            await self.publish_status_change(updated, old, actor_id)
        return updated

    async def publish_status_change(
        self, task: Task, old_status: TaskStatus, actor_id: Optional[str] = None
    ) -> None:
        await self._bus.emit(TaskEventType.STATUS_CHANGED.value, TaskEvent(
            id=event_id("tevt"),
            type=TaskEventType.STATUS_CHANGED,
            task_id=task.id,
            task=task,
            changes=[FieldChange(field="status", old_value=old_status.value, new_value=task.status.value)],
            actor_id=actor_id,
            actor_type=ActorType.USER if actor_id else ActorType.SYSTEM,
        ))

    async def claim_advancement(self, task_id: str) -> bool:
        """Atomically mark a join as advanced past; False when someone already did."""
        doc = await self._store.update(
            TASKS,
            {"id": task_id, "join_config.advanced_at": None},
            {"$set": {"join_config.advanced_at": _now()}},
        )
        return doc is not None

    async def append_callback_request(self, task_id: str, request: CallbackRequest) -> None:
        """Append to the callback audit log; allowed on terminal tasks too."""
        await self._store.update(TASKS, {"id": task_id}, {
            "$push": {"callback_requests": request.model_dump(mode="json")},
        })

    async def cancel_run_tasks(self, run_id: str) -> int:
        return await self._store.update_many(
            TASKS,
            {"workflow_run_id": run_id, "status": {"$in": NON_TERMINAL}},
            {"$set": {"status": TaskStatus.CANCELLED.value, "updated_at": _now()}},
        )


class TaskService:
    """Minimal task-management collaborator: status updates from agents and humans."""

    def __init__(self, tasks: TaskMaterializer) -> None:
        self._tasks = tasks

    async def get(self, task_id: str) -> Task:
        return await self._tasks.get(task_id)

    async def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        metadata: Optional[dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> Task:
        """
        Change a task's status and publish ``task.status.changed``.

        Raises:
            TaskNotFound: unknown task.
            InvalidTaskTransition: the task state machine forbids the move.
        """
        return await self._tasks.transition(
            task_id, status, metadata=metadata, publish=True, actor_id=actor_id,
        )
