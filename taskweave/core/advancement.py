"""
Advancement Controller — reacts to terminal task events and moves runs forward.

Event handling is best-effort and idempotent within one process:

- duplicate deliveries are dropped by a ``(task_id, status, updated_at)``
  seen-set that is cleared every ``dedup_ttl_seconds``
- advancing past a join is claimed atomically on the join task, so the
  several paths that can observe a satisfied join advance it only once
- run completion and failure are conditional writes on ``status=running``

Exceptions raised while handling an event are logged and never propagate to
the event bus; the run keeps its last persisted state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

from taskweave.config import TaskweaveConfig
from taskweave.core.executor import StepExecutor, loop_member_steps
from taskweave.core.join import JoinBarrierEvaluator, loop_work
from taskweave.core.tasks import NON_TERMINAL, TaskMaterializer
from taskweave.db.repository import RunRepository
from taskweave.events.event_bus import EventBus
from taskweave.events.publisher import RunEventPublisher
from taskweave.exceptions import InvalidTaskTransition
from taskweave.types import (
    RunStatus, StepType, Task, TaskEvent, TaskEventType, TaskStatus, TaskType,
    WorkflowDefinition, WorkflowRun, WorkflowRunEventType, WorkflowStep,
)
from taskweave.workflows.manager import WorkflowManager
from taskweave.workflows.paths import MISSING, get_path

logger = logging.getLogger(__name__)

_ADVANCING = (TaskStatus.COMPLETED, TaskStatus.FAILED)


def handover_payload(task: Task) -> dict[str, Any]:
    """Input handed to the next step: the raw metadata plus ``output``."""
    metadata = dict(task.metadata)
    return {**metadata, "output": metadata.get("output", metadata)}


class AdvancementController:
    """Subscribes to task status events and drives runs to their next steps."""

    def __init__(
        self,
        bus: EventBus,
        runs: RunRepository,
        tasks: TaskMaterializer,
        workflows: WorkflowManager,
        executor: StepExecutor,
        joins: JoinBarrierEvaluator,
        publisher: RunEventPublisher,
        config: Optional[TaskweaveConfig] = None,
    ) -> None:
        self._bus = bus
        self._runs = runs
        self._tasks = tasks
        self._workflows = workflows
        self._executor = executor
        self._joins = joins
        self._publisher = publisher
        self._config = config or TaskweaveConfig()

        self._seen: set[str] = set()
        self._seen_since = time.monotonic()
        self._loop_locks: dict[str, asyncio.Lock] = {}
        self._unsubscribers: list = []
        self._sweeper: Optional[asyncio.Task] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self, sweep: bool = True) -> None:
        """Subscribe to task events; with *sweep*, also start the join-deadline loop."""
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._bus.subscribe(TaskEventType.STATUS_CHANGED.value, self.on_task_event),
            self._bus.subscribe(TaskEventType.UPDATED.value, self.on_task_event),
        ]
        if sweep:
            self._sweeper = asyncio.get_running_loop().create_task(self._deadline_loop())
        logger.info("[Advancement] Listening for task events")

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    # ── Event entry point ─────────────────────────────────────────────────────

    def _already_seen(self, task: Task) -> bool:
        if time.monotonic() - self._seen_since >= self._config.dedup_ttl_seconds:
            self._seen.clear()
            self._seen_since = time.monotonic()
        key = f"{task.id}-{task.status.value}-{task.updated_at.isoformat()}"
        if key in self._seen:
            return True
        self._seen.add(key)
        return False

    async def on_task_event(self, event_name: str, event: TaskEvent) -> None:
        try:
            await self.handle_task_event(event)
        except Exception:
            logger.exception(
                "[Advancement] Failed handling %s for task %s (run=%s, step=%s)",
                event_name, event.task_id, event.task.workflow_run_id, event.task.workflow_step_id,
            )

    async def handle_task_event(self, event: TaskEvent) -> None:
        task = event.task
        if event.type == TaskEventType.UPDATED:
            status_change = next((c for c in event.changes if c.field == "status"), None)
            if status_change is None or status_change.new_value not in [s.value for s in _ADVANCING]:
                return
        if task.status not in _ADVANCING:
            return
        if not task.workflow_run_id or not task.workflow_step_id:
            return
        if self._already_seen(task):
            logger.debug("[Advancement] Duplicate event for task %s ignored", task.id)
            return

        run = await self._runs.find(task.workflow_run_id)
        if run is None or run.status != RunStatus.RUNNING:
            return
        definition = await self._workflows.get(run.workflow_id)

        parent = await self._tasks.find(task.parent_id) if task.parent_id else None
        if parent is not None and parent.task_type == TaskType.FOREACH:
            await self.on_foreach_progress(run, definition, parent)
            return

        awaiting = []
        if task.task_type in (TaskType.EXTERNAL, TaskType.WEBHOOK):
            awaiting = await self._tasks.query({
                "workflow_run_id": run.id,
                "task_type": TaskType.JOIN.value,
                "join_config.await_task_id": task.id,
                "status": {"$in": NON_TERMINAL},
            })
        step = definition.get_step(task.workflow_step_id)
        if awaiting and task.status == TaskStatus.COMPLETED and step is not None and not step.connections:
            # The join is this task's continuation; its positional successor is not.
            await self._close_step(run, task)
        else:
            await self.advance(run, definition, task)
        for join_task in awaiting:
            await self.on_awaited_finished(run, definition, join_task, task)

    async def on_awaited_finished(
        self, run: WorkflowRun, definition: WorkflowDefinition, join_task: Task, awaited: Task
    ) -> None:
        """Re-check a join bound to a single external task once that task finished."""
        if not await self._joins.check_condition(join_task.id, awaited.id):
            return
        await self.advance(run, definition, await self._tasks.get(join_task.id))

    # ── Foreach / join fan-in ─────────────────────────────────────────────────

    def _find_join_step(self, definition: WorkflowDefinition, foreach_step: WorkflowStep) -> Optional[WorkflowStep]:
        for body_step in loop_member_steps(definition, foreach_step):
            for conn in body_step.connections:
                target = definition.get_step(conn.target_step_id)
                if target is not None and target.step_type == StepType.JOIN:
                    return target
        for conn in foreach_step.connections:
            target = definition.get_step(conn.target_step_id)
            if target is not None and target.step_type == StepType.JOIN:
                return target
        joins = [s for s in definition.steps if s.step_type == StepType.JOIN]
        for step in joins:
            if getattr(step.config, "await_step_id", None) == foreach_step.id:
                return step
        position = definition.steps.index(foreach_step)
        return next((s for s in joins if definition.steps.index(s) > position), None)

    def _loop_exit_steps(
        self, definition: WorkflowDefinition, foreach_step: WorkflowStep, exclude: set[str]
    ) -> list[WorkflowStep]:
        """Where a loop continues when its join (or the loop itself) has no way forward."""
        body = loop_member_steps(definition, foreach_step)
        skip = exclude | {s.id for s in body} | {foreach_step.id}
        targets: list[str] = []
        for conn in foreach_step.connections + [c for s in body for c in s.connections]:
            if conn.target_step_id not in skip and conn.target_step_id not in targets:
                targets.append(conn.target_step_id)
        return [s for s in (definition.get_step(t) for t in targets) if s is not None]

    async def on_foreach_progress(
        self, run: WorkflowRun, definition: WorkflowDefinition, foreach_task: Task
    ) -> None:
        """A child of *foreach_task* finished or its item stream ended: re-check the fan-in."""
        foreach_step = definition.get_step(foreach_task.workflow_step_id)
        if foreach_step is None:
            return
        lock = self._loop_locks.setdefault(foreach_task.id, asyncio.Lock())
        async with lock:
            children = loop_work(await self._tasks.children(foreach_task.id))
            await self._tasks.update(foreach_task.id, fields={
                "batch_counters.processed_count": sum(1 for c in children if c.status == TaskStatus.COMPLETED),
                "batch_counters.failed_count": sum(1 for c in children if c.status == TaskStatus.FAILED),
            }, force=True)

            join_task = await self._tasks.latest({
                "workflow_run_id": run.id,
                "task_type": TaskType.JOIN.value,
                "join_config.await_task_id": foreach_task.id,
            })
            if join_task is None:
                join_step = self._find_join_step(definition, foreach_step)
                if join_step is None:
                    if await self._finish_loop_without_join(run, definition, foreach_step, foreach_task, children):
                        self._loop_locks.pop(foreach_task.id, None)
                    return
                parent = await self._tasks.get(foreach_task.parent_id)
                logger.info("[Advancement] Creating join %r for foreach %s", join_step.id, foreach_task.id)
                join_task = await self._executor.execute(
                    run, definition, join_step, parent,
                    foreach_task.metadata.get("input", {}), await_task=foreach_task,
                )
            elif not join_task.status.is_terminal:
                await self._joins.check_condition(join_task.id, foreach_task.id)
                join_task = await self._tasks.get(join_task.id)

        if join_task.status.is_terminal:
            self._loop_locks.pop(foreach_task.id, None)
            await self.advance(run, definition, join_task)

    async def _finish_loop_without_join(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        foreach_step: WorkflowStep,
        foreach_task: Task,
        children: list[Task],
    ) -> bool:
        """Complete a join-less loop once every item is accounted for; True when the loop is over."""
        counters = foreach_task.batch_counters
        expected = counters.expected_count if counters and counters.expected_count > 0 else len(children)
        streaming = foreach_task.foreach_config and foreach_task.foreach_config.items_source == "callback"
        if streaming and not foreach_task.foreach_config.stream_complete and expected <= 0:
            return False
        if sum(1 for c in children if c.status.is_terminal) < expected:
            return False
        try:
            done = await self._tasks.transition(foreach_task.id, TaskStatus.COMPLETED, metadata={
                "output": {"results": [c.metadata for c in children if c.status == TaskStatus.COMPLETED]},
            })
        except InvalidTaskTransition:
            return True
        await self.advance(run, definition, done, next_steps=self._loop_exit_steps(definition, foreach_step, set()))
        return True

    # ── Advancement ───────────────────────────────────────────────────────────

    def next_steps(self, definition: WorkflowDefinition, step: WorkflowStep, task: Task) -> list[WorkflowStep]:
        """Declared connections, else the positional successor, else (joins) the loop's exit."""
        targets = [definition.get_step(c.target_step_id) for c in step.connections]
        found = [s for s in targets if s is not None]
        for conn in step.connections:
            if definition.get_step(conn.target_step_id) is None:
                logger.warning("[Advancement] Next step %r not found in workflow %s",
                               conn.target_step_id, definition.id)
        if step.connections:
            return found

        foreach_step = None
        if step.step_type == StepType.JOIN and task.join_config and task.join_config.await_step_id:
            awaited = definition.get_step(task.join_config.await_step_id)
            if awaited is not None and awaited.step_type == StepType.FOREACH:
                foreach_step = awaited
        body_ids = {s.id for s in loop_member_steps(definition, foreach_step)} if foreach_step else set()

        position = definition.steps.index(step)
        if position + 1 < len(definition.steps):
            successor = definition.steps[position + 1]
            if successor.id not in body_ids:
                return [successor]
        if foreach_step is not None:
            return self._loop_exit_steps(definition, foreach_step, {step.id})
        return []

    async def _narrow(self, run: WorkflowRun, step: WorkflowStep, payload: dict[str, Any]) -> dict[str, Any]:
        """Apply the next step's ``inputPath`` to the handed-over payload."""
        path = step.input_path
        if not path:
            return payload
        head, _, rest = path.partition(".")
        completed = {"workflow_run_id": run.id, "status": TaskStatus.COMPLETED.value}
        value: Any
        if head == "steps":
            step_id, _, rest = rest.partition(".")
            source = await self._tasks.latest({**completed, "workflow_step_id": step_id})
            value = handover_payload(source) if source else MISSING
        elif head == "join":
            source = await self._tasks.latest({**completed, "task_type": TaskType.JOIN.value})
            value = handover_payload(source) if source else MISSING
        elif head == "external":
            source = await self._tasks.latest({
                **completed, "task_type": {"$in": [TaskType.EXTERNAL.value, TaskType.WEBHOOK.value]},
            })
            value = handover_payload(source) if source else MISSING
        elif head in ("all", "allResults"):
            value = {
                t.workflow_step_id: t.metadata
                for t in await self._tasks.query(completed) if t.workflow_step_id
            }
        elif head == "trigger":
            value = run.input_payload
        else:
            value, rest = payload, path
        if value is not MISSING and rest:
            value = get_path(value, rest)
        if value is MISSING:
            logger.warning("[Advancement] inputPath %r for step %r resolved nothing; passing full payload",
                           path, step.id)
            return payload
        return value if isinstance(value, dict) else {"value": value}

    async def advance(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        task: Task,
        next_steps: Optional[list[WorkflowStep]] = None,
    ) -> None:
        """Act on a task that reached completed/failed: fail the run, complete it, or run what comes next."""
        if task.task_type == TaskType.JOIN and not await self._tasks.claim_advancement(task.id):
            logger.debug("[Advancement] Join %s already advanced", task.id)
            return
        run = await self._close_step(run, task)
        if run is None:
            return
        if task.status == TaskStatus.FAILED:
            await self.fail_run(run, task)
            return

        if next_steps is None:
            step = definition.get_step(task.workflow_step_id)
            next_steps = self.next_steps(definition, step, task) if step is not None else []
        if not next_steps:
            await self.complete_run(run)
            return

        root = await self._tasks.get(run.root_task_id)
        payload = handover_payload(task)
        logger.info("[Advancement] Run %s: %s → %s", run.id, task.workflow_step_id,
                    ", ".join(s.id for s in next_steps))
        # Materialize every next task before dispatching any of them.
        staged = []
        for step in next_steps:
            step_input = await self._narrow(run, step, payload)
            staged.append((step, await self._executor.materialize(run, step, root, step_input), step_input))
        await asyncio.gather(*[
            self._executor.dispatch(run, definition, step, next_task, step_input)
            for step, next_task, step_input in staged
        ])

    async def _close_step(self, run: WorkflowRun, task: Task) -> Optional[WorkflowRun]:
        """Record a finished step on the run; None when the run is no longer running."""
        current = await self._runs.find(run.id)
        if current is None or current.status != RunStatus.RUNNING:
            return None
        run = await self._runs.mark_step_finished(run.id, task.workflow_step_id) or current
        if task.status == TaskStatus.FAILED:
            await self._publisher.publish(
                WorkflowRunEventType.STEP_FAILED, run, step_id=task.workflow_step_id,
                task_id=task.id, error=task.metadata.get("error"),
            )
        else:
            await self._publisher.publish(
                WorkflowRunEventType.STEP_COMPLETED, run, step_id=task.workflow_step_id, task_id=task.id,
            )
        return run

    async def complete_run(self, run: WorkflowRun) -> Optional[WorkflowRun]:
        """Complete the run: a branch with no next step ends the whole run."""
        output: dict[str, Any] = {}
        for t in await self._tasks.query({"workflow_run_id": run.id, "status": TaskStatus.COMPLETED.value}):
            if t.workflow_step_id:
                output[t.workflow_step_id] = t.metadata
        finished = await self._runs.finish(run.id, RunStatus.COMPLETED, output_payload=output)
        if finished is None:
            return None
        await self._finish_root(finished, TaskStatus.COMPLETED, {"output": output})
        await self._publisher.publish(WorkflowRunEventType.RUN_COMPLETED, finished)
        logger.info("[Advancement] Run %s completed", run.id)
        return finished

    async def fail_run(self, run: WorkflowRun, task: Task) -> Optional[WorkflowRun]:
        error = task.metadata.get("error") or f"Step '{task.workflow_step_id}' failed"
        message = f"Step '{task.workflow_step_id}' (task {task.id}) failed: {error}"
        finished = await self._runs.finish(
            run.id, RunStatus.FAILED, error=message, failed_step_id=task.workflow_step_id,
        )
        if finished is None:
            return None
        await self._finish_root(finished, TaskStatus.FAILED, {"error": message})
        await self._publisher.publish(
            WorkflowRunEventType.RUN_FAILED, finished, step_id=task.workflow_step_id,
            task_id=task.id, error=message,
        )
        logger.warning("[Advancement] Run %s failed: %s", run.id, message)
        return finished

    async def _finish_root(self, run: WorkflowRun, status: TaskStatus, metadata: dict[str, Any]) -> None:
        if not run.root_task_id:
            return
        try:
            await self._tasks.transition(run.root_task_id, status, metadata=metadata)
        except InvalidTaskTransition as exc:
            logger.warning("[Advancement] Root task of run %s not updated: %s", run.id, exc)

    # ── Join deadlines ────────────────────────────────────────────────────────

    async def sweep_deadlines(self) -> int:
        """Finalize waiting joins whose deadline passed; returns how many advanced."""
        advanced = 0
        for join_task in await self._joins.overdue_joins():
            try:
                run = await self._runs.find(join_task.workflow_run_id)
                if run is None or run.status != RunStatus.RUNNING:
                    continue
                if not await self._joins.check_condition(join_task.id, join_task.join_config.await_task_id):
                    continue
                definition = await self._workflows.get(run.workflow_id)
                await self.advance(run, definition, await self._tasks.get(join_task.id))
                advanced += 1
            except Exception:
                logger.exception("[Advancement] Deadline sweep failed for join %s", join_task.id)
        return advanced

    async def _deadline_loop(self) -> None:
        interval = self._config.join_deadline_check_interval
        while True:
            await asyncio.sleep(interval)
            try:
                count = await self.sweep_deadlines()
                if count:
                    logger.info("[Advancement] Deadline sweep advanced %d join(s)", count)
            except Exception:
                logger.exception("[Advancement] Deadline sweep failed")
