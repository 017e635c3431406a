"""
Callback Handler — authenticates inbound callbacks and merges them into runs.

Payload shapes, in precedence order:

1. ``{"item": ...}``      a single item
2. ``{"items": [...]}``   a batch
3. anything else          the whole payload (minus ``workflowUpdate``) is one item

``workflowUpdate.total`` sets the expected item count and
``workflowUpdate.complete`` ends the item stream regardless of count.

Every attempt, accepted or not, is appended to the target task's
``callback_requests`` audit log.  Repeated delivery of the same logical
callback is not deduplicated.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any, Optional

from taskweave.core.advancement import AdvancementController
from taskweave.core.executor import StepExecutor
from taskweave.core.tasks import TaskMaterializer
from taskweave.db.repository import RunRepository
from taskweave.exceptions import (
    CallbackError, CallbackTargetNotFound, InvalidCallbackSecret, InvalidTaskTransition,
)
from taskweave.types import (
    CallbackRequest, CallbackResult, RunStatus, Task, TaskStatus, TaskType, WorkflowRun,
)
from taskweave.workflows.manager import WorkflowManager

logger = logging.getLogger(__name__)

WORKFLOW_UPDATE_KEY = "workflowUpdate"


def extract_items(payload: dict[str, Any]) -> tuple[list[Any], bool]:
    """Return ``(items, is_batch)`` for a callback body."""
    if "item" in payload:
        return [payload["item"]], False
    if isinstance(payload.get("items"), list):
        return list(payload["items"]), True
    rest = {k: v for k, v in payload.items() if k != WORKFLOW_UPDATE_KEY}
    return ([rest] if rest else []), False


def _secret_matches(candidate: Optional[str], expected: Optional[str]) -> bool:
    return bool(candidate and expected) and hmac.compare_digest(candidate, expected)


class CallbackHandler:
    """Routes ``POST /workflow-runs/{run}/callback/{step}`` bodies to the waiting task."""

    def __init__(
        self,
        runs: RunRepository,
        tasks: TaskMaterializer,
        workflows: WorkflowManager,
        executor: StepExecutor,
        controller: AdvancementController,
    ) -> None:
        self._runs = runs
        self._tasks = tasks
        self._workflows = workflows
        self._executor = executor
        self._controller = controller

    async def _audit(
        self,
        task: Task,
        payload: dict[str, Any],
        request_info: dict[str, Any],
        outcome: str,
        error: Optional[str] = None,
        child_task_ids: Optional[list[str]] = None,
    ) -> None:
        await self._tasks.append_callback_request(task.id, CallbackRequest(
            url=request_info.get("url"),
            method=request_info.get("method", "POST"),
            headers=request_info.get("headers") or {},
            body=payload,
            outcome=outcome,
            error=error,
            child_task_ids=child_task_ids or [],
        ))

    async def _authenticate(self, run: WorkflowRun, task: Task, secret: Optional[str]) -> bool:
        if task.external_config and _secret_matches(secret, task.external_config.callback_secret):
            return True
        if _secret_matches(secret, run.callback_secret):
            return True
        if task.task_type == TaskType.FOREACH:
            upstream = await self._tasks.latest({
                "workflow_run_id": run.id,
                "task_type": TaskType.EXTERNAL.value,
                "status": TaskStatus.COMPLETED.value,
            })
            if upstream and upstream.external_config:
                return _secret_matches(secret, upstream.external_config.callback_secret)
        return False

    async def handle_callback(
        self,
        run_id: str,
        step_id: str,
        payload: dict[str, Any],
        secret: Optional[str],
        request_info: Optional[dict[str, Any]] = None,
    ) -> CallbackResult:
        """
        Apply one inbound callback.

        Raises:
            RunNotFound: unknown run.
            CallbackTargetNotFound: no waiting or in-progress task for the step.
            InvalidCallbackSecret: the secret matches neither the task, the
                run, nor (for foreach tasks) the preceding external task.
            CallbackError: the run is no longer running.
        """
        request_info = request_info or {}
        payload = payload or {}
        run = await self._runs.get(run_id)

        task = await self._tasks.latest({
            "workflow_run_id": run_id,
            "workflow_step_id": step_id,
            "status": {"$in": [TaskStatus.WAITING.value, TaskStatus.IN_PROGRESS.value]},
        })
        if task is None:
            message = f"Waiting task for step '{step_id}' in run '{run_id}' not found"
            last = await self._tasks.latest({"workflow_run_id": run_id, "workflow_step_id": step_id})
            if last is not None:
                await self._audit(last, payload, request_info, "failed", error=message)
            logger.warning("[Callbacks] %s", message)
            raise CallbackTargetNotFound(message, run_id=run_id, step_id=step_id)

        if not await self._authenticate(run, task, secret):
            message = "Invalid callback secret" if secret else "Missing callback secret"
            await self._audit(task, payload, request_info, "failed", error=message)
            logger.warning("[Callbacks] %s for run %s step %s", message, run_id, step_id)
            raise InvalidCallbackSecret(message, run_id=run_id, step_id=step_id)

        if run.status != RunStatus.RUNNING:
            message = f"Workflow run '{run_id}' is {run.status.value}"
            await self._audit(task, payload, request_info, "failed", error=message)
            raise CallbackError(message, run_id=run_id, step_id=step_id)

        items, is_batch = extract_items(payload)
        control = payload.get(WORKFLOW_UPDATE_KEY) or {}
        if task.task_type == TaskType.FOREACH:
            return await self._handle_foreach(run, task, items, control, payload, request_info)

        value = items if is_batch else (items[0] if items else {})
        try:
            completed = await self._tasks.transition(
                task.id, TaskStatus.COMPLETED,
                metadata={"callback_payload": value, "output": value}, publish=False,
            )
        except InvalidTaskTransition as exc:
            await self._audit(task, payload, request_info, "failed", error=str(exc))
            raise CallbackError(str(exc), run_id=run_id, step_id=step_id) from exc
        await self._audit(task, payload, request_info, "success")
        logger.info("[Callbacks] Task %s (%s) completed by callback", task.id, task.task_type.value)
        await self._tasks.publish_status_change(completed, task.status)
        return CallbackResult(
            task_id=task.id, task_type=task.task_type,
            received_count=1, expected_count=1, is_complete=True,
        )

    async def _handle_foreach(
        self,
        run: WorkflowRun,
        task: Task,
        items: list[Any],
        control: dict[str, Any],
        payload: dict[str, Any],
        request_info: dict[str, Any],
    ) -> CallbackResult:
        complete = bool(control.get("complete"))
        total = control.get("total")

        # Reserve item indices atomically before creating children.
        reserved = await self._tasks.update(task.id, inc={"batch_counters.received_count": len(items)})
        if reserved is None:
            message = f"Foreach task '{task.id}' finished while the callback was applied"
            await self._audit(task, payload, request_info, "failed", error=message)
            raise CallbackError(message, run_id=run.id, step_id=task.workflow_step_id)
        received = reserved.batch_counters.received_count
        start_index = received - len(items)

        fields: dict[str, Any] = {}
        if complete:
            fields["foreach_config.stream_complete"] = True
            fields["batch_counters.expected_count"] = received
        elif total is not None:
            try:
                fields["batch_counters.expected_count"] = int(total)
            except (TypeError, ValueError):
                logger.warning("[Callbacks] Ignoring non-numeric workflowUpdate.total %r", total)
        if fields:
            reserved = await self._tasks.update(task.id, fields=fields) or reserved
        expected = reserved.batch_counters.expected_count

        definition = await self._workflows.get(run.workflow_id)
        step = definition.get_step(task.workflow_step_id)
        children = await self._executor.spawn_items(
            run, definition, step, reserved, reserved.metadata.get("input", {}),
            items, start_index, expected,
        ) if step is not None and items else []
        child_ids = [c.id for c in children]
        await self._audit(task, payload, request_info, "success", child_task_ids=child_ids)

        is_complete = complete or (expected > 0 and received >= expected)
        logger.info("[Callbacks] Foreach %s received %d item(s) (%d/%s)%s", task.id, len(items),
                    received, expected or "?", " complete" if is_complete else "")
        if is_complete:
            await self._controller.on_foreach_progress(run, definition, await self._tasks.get(task.id))
        return CallbackResult(
            task_id=task.id,
            task_type=task.task_type,
            child_task_ids=child_ids,
            received_count=received,
            expected_count=expected,
            is_complete=is_complete,
        )
