"""taskweave — workflow execution engine.

Usage:
    from taskweave import RunOrchestrator, InMemoryDocumentStore, StartWorkflowInput

    engine = RunOrchestrator(InMemoryDocumentStore())
    await engine.start()
    await engine.workflows.register(definition)
    run, root = await engine.start_workflow(StartWorkflowInput(workflow_id=definition.id))
"""

from taskweave.types import (
    StepType, TaskType, TaskStatus, RunStatus, WorkflowRunEventType,
    WorkflowDefinition, WorkflowStep, StepConnection, StartWorkflowInput, TaskDefaults,
    WorkflowRun, Task, TaskEvent, WorkflowRunEvent, CallbackResult,
)
from taskweave.exceptions import (
    TaskweaveError, WorkflowError, WorkflowNotFound, WorkflowInactiveError,
    WorkflowValidationError, WorkflowStateError, RunNotFound, TaskNotFound,
    InvalidTaskTransition, CallbackError, InvalidCallbackSecret,
    CallbackTargetNotFound, OutboundCallError,
)
from taskweave.db import DocumentStore, InMemoryDocumentStore
from taskweave.events import EventBus
from taskweave.core.orchestrator import RunOrchestrator
from taskweave.version import __version__

__all__ = [
    "StepType", "TaskType", "TaskStatus", "RunStatus", "WorkflowRunEventType",
    "WorkflowDefinition", "WorkflowStep", "StepConnection", "StartWorkflowInput", "TaskDefaults",
    "WorkflowRun", "Task", "TaskEvent", "WorkflowRunEvent", "CallbackResult",
    "TaskweaveError", "WorkflowError", "WorkflowNotFound", "WorkflowInactiveError",
    "WorkflowValidationError", "WorkflowStateError", "RunNotFound", "TaskNotFound",
    "InvalidTaskTransition", "CallbackError", "InvalidCallbackSecret",
    "CallbackTargetNotFound", "OutboundCallError",
    "DocumentStore", "InMemoryDocumentStore", "EventBus", "RunOrchestrator",
    "__version__",
]
