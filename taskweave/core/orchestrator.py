"""Run Orchestrator — public entry point. Wires the engine together.

Starts runs, cancels them, answers queries, and exposes the callback handler
and the administrative join rerun.  Collaborators are built from the injected
DocumentStore and EventBus unless passed in explicitly.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from taskweave.config import TaskweaveConfig
from taskweave.core.advancement import AdvancementController
from taskweave.core.callbacks import CallbackHandler
from taskweave.core.executor import StepExecutor, task_defaults_fields
from taskweave.core.ids import generate_secret
from taskweave.core.join import JoinBarrierEvaluator
from taskweave.core.outbound import OutboundCaller
from taskweave.core.tasks import TaskMaterializer, TaskService
from taskweave.db.repository import RunRepository
from taskweave.db.store import DocumentStore
from taskweave.events.event_bus import EventBus
from taskweave.events.publisher import RunEventPublisher
from taskweave.exceptions import (
    WorkflowInactiveError, WorkflowStateError, WorkflowValidationError,
)
from taskweave.types import (
    CallbackResult, RunStatus, StartWorkflowInput, Task, TaskStatus, TaskType,
    WorkflowRun, WorkflowRunEventType,
)
from taskweave.workflows.manager import WorkflowManager
from taskweave.workflows.templates import render_title

logger = logging.getLogger(__name__)


class RunOrchestrator:
    """Single entry point for starting and managing workflow runs.

    Usage::

        engine = RunOrchestrator(InMemoryDocumentStore())
        await engine.start()
        await engine.workflows.register(definition)
        run, root = await engine.start_workflow(StartWorkflowInput(workflow_id=definition.id))
    """

    def __init__(
        self,
        store: DocumentStore,
        bus: Optional[EventBus] = None,
        config: Optional[TaskweaveConfig] = None,
        outbound: Optional[OutboundCaller] = None,
        workflows: Optional[WorkflowManager] = None,
    ) -> None:
        self.config = config or TaskweaveConfig()
        self.bus = bus or EventBus()
        self.store = store
        self.runs = RunRepository(store)
        self.task_store = TaskMaterializer(store, self.bus)
        self.tasks = TaskService(self.task_store)
        self.workflows = workflows or WorkflowManager(store, config=self.config)
        self.outbound = outbound or OutboundCaller(
            timeout_seconds=self.config.outbound_timeout_seconds,
            success_status_codes=self.config.outbound_success_status_codes,
        )
        self.publisher = RunEventPublisher(self.bus)
        self.joins = JoinBarrierEvaluator(self.task_store)
        self.executor = StepExecutor(
            self.task_store, self.runs, self.joins, self.outbound, self.publisher, self.config,
        )
        self.controller = AdvancementController(
            self.bus, self.runs, self.task_store, self.workflows, self.executor,
            self.joins, self.publisher, self.config,
        )
        self.callbacks = CallbackHandler(
            self.runs, self.task_store, self.workflows, self.executor, self.controller,
        )

    async def start(self, sweep: bool = True) -> None:
        """Begin consuming task events (and sweeping join deadlines when *sweep*)."""
        self.controller.start(sweep=sweep)

    async def stop(self) -> None:
        await self.controller.stop()
        await self.outbound.aclose()

    def subscribe(self, event: str, handler: Callable) -> Callable[[], None]:
        """Subscribe to run events (``workflow.run.*`` names or ``"*"``); returns an unsubscribe function."""
        return self.bus.subscribe(event, handler)

    # ── Runs ──────────────────────────────────────────────────────────────────

    async def start_workflow(
        self, request: StartWorkflowInput, actor_id: Optional[str] = None
    ) -> tuple[WorkflowRun, Task]:
        """
        Start a run of ``request.workflow_id`` and execute its first step.

        Raises:
            WorkflowNotFound: unknown workflow.
            WorkflowInactiveError: workflow is deactivated.
            WorkflowValidationError: workflow has no steps.
        """
        definition = await self.workflows.get(request.workflow_id)
        if not definition.is_active:
            raise WorkflowInactiveError(
                f"Workflow '{definition.name}' is not active.", workflow_id=definition.id,
            )
        if not definition.steps:
            raise WorkflowValidationError(
                f"Workflow '{definition.name}' has no steps.", violations=["Workflow has no steps."],
            )

        now = datetime.now(timezone.utc)
        run = WorkflowRun(
            workflow_id=definition.id,
            callback_secret=generate_secret(),
            input_payload=request.input_payload,
            task_defaults=request.task_defaults,
            external_id=request.external_id,
            source=request.source,
            created_by_id=actor_id,
            started_at=now,
        )
        root = Task(
            title=render_title(
                definition.root_task_title_template, request.input_payload, f"Workflow: {definition.name}",
            ),
            summary=definition.description or None,
            status=TaskStatus.IN_PROGRESS,
            task_type=TaskType.ROOT,
            workflow_id=definition.id,
            workflow_run_id=run.id,
            metadata={
                "workflow_run_id": run.id,
                "input_payload": request.input_payload,
                "external_id": request.external_id,
                "source": request.source,
            },
            created_by_id=actor_id,
            **task_defaults_fields(run),
        )
        run.root_task_id = root.id
        await self.runs.insert(run)
        await self.task_store.create(root)
        logger.info("[Orchestrator] Started run %s of %r (root task %s)", run.id, definition.name, root.id)
        await self.publisher.publish(WorkflowRunEventType.RUN_STARTED, run, actor_id=actor_id)

        await self.executor.execute(run, definition, definition.steps[0], root, request.input_payload)
        return await self.runs.get(run.id), await self.task_store.get(root.id)

    async def cancel_workflow_run(self, run_id: str, actor_id: Optional[str] = None) -> WorkflowRun:
        """
        Cancel a running run and every non-terminal task in it.

        In-flight outbound calls are not aborted.

        Raises:
            RunNotFound: unknown run.
            WorkflowStateError: the run is not running.
        """
        run = await self.runs.get(run_id)
        cancelled = await self.runs.finish(run_id, RunStatus.CANCELLED)
        if cancelled is None:
            current = await self.runs.get(run_id)
            raise WorkflowStateError(
                f"Workflow run '{run_id}' is {current.status.value}; only running runs can be cancelled.",
                details={"run_id": run_id, "status": current.status.value},
            )
        count = await self.task_store.cancel_run_tasks(run.id)
        logger.info("[Orchestrator] Cancelled run %s (%d task(s) cancelled)", run_id, count)
        await self.publisher.publish(WorkflowRunEventType.RUN_CANCELLED, cancelled, actor_id=actor_id)
        return cancelled

    async def get_workflow_run(self, run_id: str) -> WorkflowRun:
        return await self.runs.get(run_id)

    async def get_workflow_run_with_tasks(self, run_id: str) -> tuple[WorkflowRun, list[Task]]:
        run = await self.runs.get(run_id)
        return run, await self.task_store.run_tasks(run_id)

    async def list_workflow_runs(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[list[RunStatus]] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[WorkflowRun], int]:
        return await self.runs.list_runs(workflow_id=workflow_id, statuses=statuses, page=page, limit=limit)

    # ── Callbacks and administration ──────────────────────────────────────────

    async def handle_callback(
        self,
        run_id: str,
        step_id: str,
        payload: dict[str, Any],
        secret: Optional[str],
        request_info: Optional[dict[str, Any]] = None,
    ) -> CallbackResult:
        return await self.callbacks.handle_callback(run_id, step_id, payload, secret, request_info)

    async def rerun_join(self, task_id: str) -> bool:
        """
        Re-aggregate a join against its awaited task, even if the join is terminal.

        Advances past the join when that has not happened yet and the run is
        still running.  Returns whether the barrier is satisfied.

        Raises:
            TaskNotFound: unknown task.
            WorkflowStateError: the task is not a bound join.
        """
        join_task = await self.task_store.get(task_id)
        if join_task.task_type != TaskType.JOIN or not join_task.join_config or not join_task.join_config.await_task_id:
            raise WorkflowStateError(
                f"Task '{task_id}' is not a join bound to an awaited task.", details={"task_id": task_id},
            )
        satisfied = await self.joins.check_condition(task_id, join_task.join_config.await_task_id, force=True)
        logger.info("[Orchestrator] Reran join %s: satisfied=%s", task_id, satisfied)
        if not satisfied:
            return False
        run = await self.runs.get(join_task.workflow_run_id)
        refreshed = await self.task_store.get(task_id)
        if run.status == RunStatus.RUNNING and refreshed.join_config.advanced_at is None:
            definition = await self.workflows.get(run.workflow_id)
            await self.controller.advance(run, definition, refreshed)
        return True
