"""
Step Executor — materializes a task for a step and performs its side effects.

Dispatch by step type:

- trigger: completes immediately
- agent / manual / flow: left pending; completed from outside
- external / webhook: templated outbound HTTP call, then either completes
  from the response (fire-and-complete) or waits for a callback
- decision: picks a route and executes the chosen step right away
- foreach: fans out one child task per item, or waits for items by callback
- join: binds to the awaited task and checks the barrier immediately
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from taskweave.config import TaskweaveConfig
from taskweave.core.ids import generate_secret
from taskweave.core.join import JoinBarrierEvaluator
from taskweave.core.outbound import OutboundCaller
from taskweave.core.tasks import TaskMaterializer
from taskweave.db.repository import RunRepository
from taskweave.events.publisher import RunEventPublisher
from taskweave.exceptions import InvalidTaskTransition
from taskweave.types import (
    BatchCounters, DecisionStepConfig, ExternalConfig, ForeachConfig, ForeachStepConfig,
    HttpStepConfig, JoinBoundary, JoinConfig, JoinStepConfig, StepConnection, StepType,
    Task, TaskStatus, TaskType, WebhookConfig, WorkflowDefinition, WorkflowRun,
    WorkflowRunEventType, WorkflowStep,
)
from taskweave.workflows.paths import MISSING, get_path
from taskweave.workflows.templates import (
    TemplateContext, render_title, resolve, resolve_body, stringify,
)

logger = logging.getLogger(__name__)

INITIAL_STATUS: dict[StepType, TaskStatus] = {
    StepType.TRIGGER: TaskStatus.IN_PROGRESS,
    StepType.EXTERNAL: TaskStatus.IN_PROGRESS,
    StepType.WEBHOOK: TaskStatus.IN_PROGRESS,
    StepType.DECISION: TaskStatus.IN_PROGRESS,
    StepType.FOREACH: TaskStatus.WAITING,
    StepType.JOIN: TaskStatus.WAITING,
    StepType.AGENT: TaskStatus.PENDING,
    StepType.MANUAL: TaskStatus.PENDING,
    StepType.FLOW: TaskStatus.PENDING,
}


def evaluate_condition(condition: Optional[str], payload: dict[str, Any]) -> bool:
    """``field:value1,value2`` matches when the value at *field* is one of the listed values."""
    if not condition or ":" not in condition:
        return False
    field, _, values = condition.partition(":")
    if not field.strip() or not values.strip():
        return False
    actual = get_path(payload, field.strip())
    if actual is MISSING:
        return False
    return stringify(actual) in [v.strip() for v in values.split(",")]


def choose_connection(
    connections: list[StepConnection], default_connection: Optional[str], payload: dict[str, Any]
) -> Optional[str]:
    """First matching condition, then the declared default, then the first unconditioned connection."""
    for conn in connections:
        if conn.condition and evaluate_condition(conn.condition, payload):
            return conn.target_step_id
    if default_connection:
        return default_connection
    for conn in connections:
        if not conn.condition:
            return conn.target_step_id
    return None


def loop_body_steps(definition: WorkflowDefinition, foreach_step: WorkflowStep) -> list[WorkflowStep]:
    """Steps a foreach fans out into: its connection targets that are not joins."""
    body: list[WorkflowStep] = []
    for conn in foreach_step.connections:
        target = definition.get_step(conn.target_step_id)
        if target is not None and target.step_type != StepType.JOIN:
            body.append(target)
    return body


def loop_member_steps(definition: WorkflowDefinition, foreach_step: WorkflowStep) -> list[WorkflowStep]:
    """The loop body plus every step a decision inside the loop routes to."""
    members = loop_body_steps(definition, foreach_step)
    seen = {s.id for s in members}
    decisions = [s for s in members if s.step_type == StepType.DECISION]
    while decisions:
        for conn in decisions.pop().connections:
            target = definition.get_step(conn.target_step_id)
            if target is None or target.step_type == StepType.JOIN or target.id in seen:
                continue
            seen.add(target.id)
            members.append(target)
            if target.step_type == StepType.DECISION:
                decisions.append(target)
    return members


def task_defaults_fields(run: WorkflowRun, step: Optional[WorkflowStep] = None) -> dict[str, Any]:
    """Run-level task defaults; a step's default assignee wins over the run's."""
    defaults = run.task_defaults
    fields: dict[str, Any] = {}
    if defaults is not None:
        fields.update(assignee_id=defaults.assignee_id, urgency=defaults.urgency, tags=list(defaults.tags))
        if defaults.due_offset_hours is not None:
            fields["due_at"] = datetime.now(timezone.utc) + timedelta(hours=defaults.due_offset_hours)
    if step is not None and step.default_assignee_id:
        fields["assignee_id"] = step.default_assignee_id
    return fields


class StepExecutor:
    """Executes one workflow step under a parent task."""

    def __init__(
        self,
        tasks: TaskMaterializer,
        runs: RunRepository,
        joins: JoinBarrierEvaluator,
        outbound: OutboundCaller,
        publisher: RunEventPublisher,
        config: Optional[TaskweaveConfig] = None,
    ) -> None:
        self._tasks = tasks
        self._runs = runs
        self._joins = joins
        self._outbound = outbound
        self._publisher = publisher
        self._config = config or TaskweaveConfig()

    async def execute(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        parent_task: Task,
        input_payload: dict[str, Any],
        await_task: Optional[Task] = None,
    ) -> Task:
        """
        Materialize a task for *step* under *parent_task* and dispatch it.

        *await_task* pins the task a join step binds to; without it the join
        resolves its target from ``awaitStepId`` or the most recent waiting
        foreach/external task of the run.

        Returns the task in its state after dispatch.
        """
        task = await self.materialize(run, step, parent_task, input_payload)
        return await self.dispatch(run, definition, step, task, input_payload, await_task)

    async def materialize(
        self, run: WorkflowRun, step: WorkflowStep, parent_task: Task, input_payload: dict[str, Any]
    ) -> Task:
        """Persist the task for *step* and announce the step start, without side effects."""
        task = await self._tasks.create(self._build_task(run, step, parent_task, input_payload))
        await self._runs.mark_step_started(run.id, step.id)
        await self._publisher.publish(
            WorkflowRunEventType.STEP_STARTED, run, step_id=step.id, task_id=task.id,
        )
        logger.info("[Executor] Run %s: step %r (%s) → task %s",
                    run.id, step.id, step.step_type.value, task.id)
        return task

    async def dispatch(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        task: Task,
        input_payload: dict[str, Any],
        await_task: Optional[Task] = None,
    ) -> Task:
        """Perform the type-specific work for an already materialized *task*."""
        step_type = step.step_type
        if step_type == StepType.TRIGGER:
            return await self._tasks.transition(
                task.id, TaskStatus.COMPLETED, metadata={"output": input_payload}, publish=True,
            )
        if step_type in (StepType.EXTERNAL, StepType.WEBHOOK):
            return await self._execute_http(run, definition, step, task, input_payload)
        if step_type == StepType.DECISION:
            return await self._execute_decision(run, definition, step, task, input_payload)
        if step_type == StepType.FOREACH:
            return await self._execute_foreach(run, definition, step, task, input_payload)
        if step_type == StepType.JOIN:
            return await self._execute_join(run, step, task, input_payload, await_task)
        if step_type == StepType.FLOW:
            logger.warning("[Executor] Flow step %r is not executable; task %s left pending", step.id, task.id)
        return task

    def _build_task(
        self, run: WorkflowRun, step: WorkflowStep, parent: Task, payload: dict[str, Any]
    ) -> Task:
        fallback = step.name
        if "_index" in payload and "_total" in payload:
            fallback = f"{step.name} [{payload['_index'] + 1}/{payload['_total'] or '?'}]"
        task = Task(
            title=render_title(step.title_template, payload, fallback),
            summary=step.description or None,
            extra_prompt=step.additional_instructions,
            status=INITIAL_STATUS[step.step_type],
            task_type=TaskType(step.step_type.value),
            parent_id=parent.id,
            workflow_id=run.workflow_id,
            workflow_run_id=run.id,
            workflow_step_id=step.id,
            metadata={"step_id": step.id, "step_type": step.step_type.value, "input": payload},
            created_by_id=run.created_by_id,
            **task_defaults_fields(run, step),
        )
        config = step.config
        if isinstance(config, HttpStepConfig):
            task.webhook_config = WebhookConfig(
                url=config.url, method=config.method, wait_for_callback=config.wait_for_callback,
            )
            if step.step_type == StepType.EXTERNAL or config.wait_for_callback:
                task.external_config = ExternalConfig(callback_secret=generate_secret())
        elif isinstance(config, ForeachStepConfig):
            task.foreach_config = ForeachConfig(
                items_path=config.items_path,
                item_variable=config.item_variable or "item",
                max_items=config.max_items or self._config.foreach_default_max_items,
            )
            task.batch_counters = BatchCounters()
        return task

    # ── external / webhook ───────────────────────────────────────────────────

    @staticmethod
    def _next_foreach_step_id(definition: WorkflowDefinition, step: WorkflowStep) -> Optional[str]:
        for conn in step.connections:
            target = definition.get_step(conn.target_step_id)
            if target is not None and target.step_type == StepType.FOREACH:
                return target.id
        return None

    async def _execute_http(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        task: Task,
        payload: dict[str, Any],
    ) -> Task:
        config: HttpStepConfig = step.config
        ctx = TemplateContext(
            run_id=run.id,
            step_id=step.id,
            task_id=task.id,
            callback_secret=task.external_config.callback_secret if task.external_config else run.callback_secret,
            input_payload=payload,
            next_foreach_step_id=self._next_foreach_step_id(definition, step),
            base_url=self._config.public_base_url,
        )
        url = resolve(config.url, ctx)
        headers = {key: resolve(value, ctx) for key, value in config.headers.items()}
        body = resolve_body(config.body_template, ctx)

        attempt = await self._outbound.call(
            config.method, url, headers=headers, body=body,
            timeout_seconds=config.timeout_seconds or self._config.outbound_timeout_seconds,
            success_status_codes=config.success_status_codes,
        )
        # A callback may already have completed the task; the attempt is still recorded.
        await self._tasks.update(task.id, fields={
            "webhook_config.url": url,
            "webhook_config.attempts": [attempt.model_dump(mode="json")],
        }, force=True)

        if config.wait_for_callback:
            if attempt.status == "failed":
                logger.warning("[Executor] Outbound call for %s failed (%s); still waiting for callback",
                               task.id, attempt.error)
            return await self._tasks.get(task.id)

        if attempt.status == "success":
            metadata = {"output": attempt.response_body, "http_status": attempt.http_status}
            status = TaskStatus.COMPLETED
        else:
            metadata = {"error": attempt.error, "http_status": attempt.http_status}
            status = TaskStatus.FAILED
        try:
            return await self._tasks.transition(task.id, status, metadata=metadata, publish=True)
        except InvalidTaskTransition:
            logger.info("[Executor] Task %s finished elsewhere before the outbound call returned", task.id)
            return await self._tasks.get(task.id)

    # ── decision ─────────────────────────────────────────────────────────────

    async def _execute_decision(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        task: Task,
        payload: dict[str, Any],
    ) -> Task:
        config: DecisionStepConfig = step.config
        target_id = choose_connection(step.connections, config.default_connection, payload)
        target = definition.get_step(target_id) if target_id else None
        if target is None:
            logger.warning("[Executor] Decision step %r has no valid path", step.id)
            return await self._tasks.transition(
                task.id, TaskStatus.FAILED, metadata={"error": "No valid decision path"},
            )

        # Materialize the chosen step before the decision turns terminal.
        parent = await self._tasks.get(task.parent_id)
        target_task = await self.materialize(run, target, parent, payload)
        condition = next((c.condition for c in step.connections if c.target_step_id == target_id), None)
        decided = await self._tasks.transition(
            task.id,
            TaskStatus.COMPLETED,
            metadata={"selected_path": target_id, "condition": condition, "output": payload},
            fields={"decision_result": target_id},
        )
        await self._runs.mark_step_finished(run.id, step.id)
        await self.dispatch(run, definition, target, target_task, payload)
        return decided

    # ── foreach ──────────────────────────────────────────────────────────────

    async def _execute_foreach(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        task: Task,
        payload: dict[str, Any],
    ) -> Task:
        config: ForeachStepConfig = step.config
        items = get_path(payload, config.items_path) if config.items_path else MISSING

        if not isinstance(items, list) or not items:
            expected = config.expected_count
            if expected is None and config.expected_count_path:
                found = get_path(payload, config.expected_count_path)
                try:
                    expected = int(found)
                except (TypeError, ValueError):
                    expected = 0
            logger.info("[Executor] Foreach %s awaiting items by callback (expected=%s)", task.id, expected or "unknown")
            await self._tasks.update(task.id, fields={
                "foreach_config.items_source": "callback",
                "batch_counters.expected_count": expected or 0,
            }, metadata={"awaiting_items": True})
            return await self._tasks.get(task.id)

        items = items[: task.foreach_config.max_items]
        expected = config.expected_count if config.expected_count is not None else len(items)
        await self._tasks.update(task.id, fields={
            "batch_counters.expected_count": expected,
            "batch_counters.received_count": len(items),
        }, metadata={"item_count": len(items)})

        children = await self.spawn_items(run, definition, step, task, payload, items, 0, len(items))
        logger.info("[Executor] Foreach %s created %d child tasks", task.id, len(children))
        return await self._tasks.get(task.id)

    async def spawn_items(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        foreach_task: Task,
        payload: dict[str, Any],
        items: list[Any],
        start_index: int,
        total: int,
    ) -> list[Task]:
        """Create and execute one child per item for every loop-body step, concurrently."""
        body = loop_body_steps(definition, step)
        if not body:
            logger.warning("[Executor] Foreach step %r has no connected steps", step.id)
            return []
        item_variable = foreach_task.foreach_config.item_variable if foreach_task.foreach_config else "item"
        coros = []
        for offset, item in enumerate(items):
            item_payload = {
                **payload,
                item_variable: item,
                "_index": start_index + offset,
                "_total": total,
            }
            for target in body:
                coros.append(self.execute(run, definition, target, foreach_task, item_payload))
        return list(await asyncio.gather(*coros))

    # ── join ─────────────────────────────────────────────────────────────────

    async def _find_awaited(
        self, run: WorkflowRun, config: JoinStepConfig
    ) -> Optional[Task]:
        if config.await_step_id:
            return await self._tasks.latest({
                "workflow_run_id": run.id,
                "workflow_step_id": config.await_step_id,
                "task_type": {"$in": [TaskType.FOREACH.value, TaskType.EXTERNAL.value, TaskType.WEBHOOK.value]},
            })
        return await self._tasks.latest({
            "workflow_run_id": run.id,
            "task_type": {"$in": [TaskType.FOREACH.value, TaskType.EXTERNAL.value]},
            "status": {"$in": [TaskStatus.WAITING.value, TaskStatus.IN_PROGRESS.value]},
        })

    async def _resolve_expected_count(
        self, run: WorkflowRun, config: JoinStepConfig, payload: dict[str, Any]
    ) -> Optional[int]:
        if config.expected_count is not None:
            return config.expected_count
        if not config.expected_count_path:
            return None
        value = get_path(payload, config.expected_count_path)
        if value is MISSING:
            external = await self._tasks.latest({
                "workflow_run_id": run.id,
                "task_type": {"$in": [TaskType.EXTERNAL.value, TaskType.WEBHOOK.value]},
            })
            if external is not None:
                value = get_path(external.metadata, config.expected_count_path)
                if value is MISSING:
                    value = get_path(external.metadata.get("output") or {}, config.expected_count_path)
        try:
            return int(value) if value is not MISSING and value is not None else None
        except (TypeError, ValueError):
            logger.warning("[Executor] expectedCountPath %r is not a number: %r", config.expected_count_path, value)
            return None

    @staticmethod
    def _boundary_snapshot(config: JoinStepConfig) -> Optional[JoinBoundary]:
        boundary = config.boundary
        if boundary is None:
            return None
        deadline = boundary.deadline_at
        if deadline is not None and deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=timezone.utc)
        if deadline is None and boundary.deadline_seconds is not None:
            deadline = datetime.now(timezone.utc) + timedelta(seconds=boundary.deadline_seconds)
        return JoinBoundary(deadline_seconds=boundary.deadline_seconds, deadline_at=deadline)

    async def _execute_join(
        self,
        run: WorkflowRun,
        step: WorkflowStep,
        task: Task,
        payload: dict[str, Any],
        await_task: Optional[Task],
    ) -> Task:
        config: JoinStepConfig = step.config
        awaited = await_task or await self._find_awaited(run, config)
        if awaited is None:
            logger.info("[Executor] Join %s has nothing to join on; completing", task.id)
            return await self._tasks.transition(
                task.id, TaskStatus.COMPLETED,
                metadata={"output": payload, "reason": "nothing_to_join"}, publish=True,
            )

        join_config = JoinConfig(
            await_step_id=awaited.workflow_step_id,
            await_task_id=awaited.id,
            min_success_percent=config.min_success_percent,
            expected_count=await self._resolve_expected_count(run, config, payload),
            input_path=config.input_path,
            boundary=self._boundary_snapshot(config),
        )
        await self._tasks.update(
            task.id,
            fields={"join_config": join_config.model_dump(mode="json")},
            metadata={"awaiting_task_id": awaited.id},
        )

        if await self._joins.check_condition(task.id, awaited.id):
            joined = await self._tasks.get(task.id)
            if joined.status.is_terminal and joined.join_config.advanced_at is None:
                # Satisfied on creation: nothing else will report this join, so announce it.
                await self._tasks.publish_status_change(joined, TaskStatus.WAITING)
        return await self._tasks.get(task.id)

