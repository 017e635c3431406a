"""All shared types, enums, and type aliases. Everything imports from here."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ──────────────────────────────────────────────────────────────

class StepType(str, Enum):
    TRIGGER = "trigger"
    AGENT = "agent"         # completed by an AI agent updating the task
    MANUAL = "manual"       # completed by a human
    EXTERNAL = "external"   # outbound call, legacy wait-for-callback by default
    WEBHOOK = "webhook"     # outbound call, fire-and-complete by default
    DECISION = "decision"
    FOREACH = "foreach"
    JOIN = "join"
    FLOW = "flow"           # nested workflow, not executed

class TaskType(str, Enum):
    ROOT = "root"
    TRIGGER = "trigger"
    AGENT = "agent"
    MANUAL = "manual"
    EXTERNAL = "external"
    WEBHOOK = "webhook"
    DECISION = "decision"
    FOREACH = "foreach"
    JOIN = "join"
    FLOW = "flow"

class TaskStatus(str, Enum):
    PENDING = "pending"
    WAITING = "waiting"         # waiting for children or callback items
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)

class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

class ActorType(str, Enum):
    USER = "user"
    SYSTEM = "system"
    DAEMON = "daemon"

class WorkflowRunEventType(str, Enum):
    RUN_STARTED = "workflow.run.started"
    RUN_COMPLETED = "workflow.run.completed"
    RUN_FAILED = "workflow.run.failed"
    RUN_CANCELLED = "workflow.run.cancelled"
    STEP_STARTED = "workflow.run.step.started"
    STEP_COMPLETED = "workflow.run.step.completed"
    STEP_FAILED = "workflow.run.step.failed"

class TaskEventType(str, Enum):
    CREATED = "task.created"
    UPDATED = "task.updated"
    STATUS_CHANGED = "task.status.changed"


# Allowed task status transitions; cancellation is handled separately by run cancel.
TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.WAITING, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.WAITING: {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.IN_PROGRESS: {TaskStatus.WAITING, TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.CANCELLED: set(),
}

DEFAULT_SUCCESS_STATUS_CODES = [200, 201, 202, 204]


# ── Definition shapes (camelCase accepted on input) ────────────────────

class _DefinitionModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepConnection(_DefinitionModel):
    target_step_id: str
    condition: Optional[str] = None     # "field:value1,value2"
    label: Optional[str] = None


class HttpStepConfig(_DefinitionModel):
    """Outbound call configuration shared by external and webhook steps."""
    kind: Literal["http"] = "http"
    url: str = ""
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body_template: Any = None               # JSON string or dict, resolved per string leaf
    timeout_seconds: Optional[float] = None
    success_status_codes: list[int] = Field(default_factory=lambda: list(DEFAULT_SUCCESS_STATUS_CODES))
    wait_for_callback: bool = False
    retry_count: int = 0                    # recorded only; no orchestration-level retry


class ForeachStepConfig(_DefinitionModel):
    kind: Literal["foreach"] = "foreach"
    items_path: Optional[str] = None
    item_variable: str = "item"
    max_items: Optional[int] = None
    expected_count_path: Optional[str] = None
    expected_count: Optional[int] = None


class JoinBoundary(_DefinitionModel):
    deadline_seconds: Optional[float] = None
    deadline_at: Optional[datetime] = None


class JoinStepConfig(_DefinitionModel):
    kind: Literal["join"] = "join"
    await_step_id: Optional[str] = None
    min_success_percent: float = 100.0
    expected_count_path: Optional[str] = None
    expected_count: Optional[int] = None
    input_path: Optional[str] = None        # projection applied to each child's metadata
    boundary: Optional[JoinBoundary] = None


class DecisionStepConfig(_DefinitionModel):
    kind: Literal["decision"] = "decision"
    default_connection: Optional[str] = None


class FlowStepConfig(_DefinitionModel):
    kind: Literal["flow"] = "flow"
    flow_id: Optional[str] = None


class HumanStepConfig(_DefinitionModel):
    """Trigger, agent, and manual steps carry no type-specific settings."""
    kind: Literal["task"] = "task"


StepConfig = Annotated[
    Union[HttpStepConfig, ForeachStepConfig, JoinStepConfig, DecisionStepConfig, FlowStepConfig, HumanStepConfig],
    Field(discriminator="kind"),
]


def _pick(raw: dict, *names: str) -> Any:
    for name in names:
        if raw.get(name) is not None:
            return raw[name]
    return None


def build_step_config(step_type: str, raw: dict[str, Any]) -> dict[str, Any]:
    """Normalize the loosely-typed per-type fields of a raw step into one config dict."""
    if step_type in (StepType.EXTERNAL.value, StepType.WEBHOOK.value):
        external = dict(_pick(raw, "externalConfig", "external_config") or {})
        webhook = dict(_pick(raw, "webhookConfig", "webhook_config") or {})
        merged = {**external, **webhook}
        wait = _pick(merged, "waitForCallback", "wait_for_callback")
        if wait is None:
            wait = _pick(raw, "waitForCallback", "wait_for_callback")
        config: dict[str, Any] = {
            "kind": "http",
            "url": _pick(merged, "url", "endpoint") or "",
            "method": (_pick(merged, "method") or "POST").upper(),
            "headers": {**(external.get("headers") or {}), **(webhook.get("headers") or {})},
            "body_template": _pick(merged, "bodyTemplate", "body_template", "payloadTemplate", "payload_template", "body"),
            "wait_for_callback": step_type == StepType.EXTERNAL.value if wait is None else bool(wait),
        }
        timeout = _pick(merged, "timeoutSeconds", "timeout_seconds", "timeout")
        if timeout is not None:
            config["timeout_seconds"] = timeout
        codes = _pick(merged, "successStatusCodes", "success_status_codes")
        if codes:
            config["success_status_codes"] = codes
        retries = _pick(merged, "retryCount", "retry_count", "maxRetries", "max_retries")
        if retries is not None:
            config["retry_count"] = retries
        return config
    if step_type == StepType.FOREACH.value:
        return {**raw, "kind": "foreach"}
    if step_type == StepType.JOIN.value:
        nested = dict(_pick(raw, "joinConfig", "join_config") or {})
        merged = {k: v for k, v in raw.items() if k not in ("inputPath", "input_path")}
        merged.update(nested)
        boundary = _pick(merged, "joinBoundary", "join_boundary", "boundary")
        if boundary is not None:
            merged["boundary"] = boundary
        merged["kind"] = "join"
        return merged
    if step_type == StepType.DECISION.value:
        return {"kind": "decision", "default_connection": _pick(raw, "defaultConnection", "default_connection")}
    if step_type == StepType.FLOW.value:
        return {"kind": "flow", "flow_id": _pick(raw, "flowId", "flow_id")}
    return {"kind": "task"}


class WorkflowStep(_DefinitionModel):
    id: str
    name: str
    description: str = ""
    step_type: StepType = StepType.AGENT
    connections: list[StepConnection] = Field(default_factory=list)
    config: StepConfig = Field(default_factory=HumanStepConfig)
    title_template: Optional[str] = None
    default_assignee_id: Optional[str] = None
    additional_instructions: Optional[str] = None
    input_path: Optional[str] = None        # narrows the input handed over at advancement

    @model_validator(mode="before")
    @classmethod
    def _normalize_config(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("config") is not None:
            return data
        step_type = data.get("step_type") or data.get("stepType") or StepType.AGENT.value
        if isinstance(step_type, StepType):
            step_type = step_type.value
        return {**data, "config": build_step_config(step_type, data)}


class WorkflowDefinition(_DefinitionModel):
    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    is_active: bool = True
    steps: list[WorkflowStep] = Field(default_factory=list)
    root_task_title_template: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        return next((s for s in self.steps if s.id == step_id), None)


class TaskDefaults(_DefinitionModel):
    assignee_id: Optional[str] = None
    urgency: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    due_offset_hours: Optional[float] = None


class StartWorkflowInput(_DefinitionModel):
    workflow_id: str
    input_payload: dict[str, Any] = Field(default_factory=dict)
    task_defaults: Optional[TaskDefaults] = None
    external_id: Optional[str] = None
    source: Optional[str] = None


# ── Runtime records ────────────────────────────────────────────────────

class WorkflowRun(BaseModel):
    """One execution instance of a WorkflowDefinition."""
    id: str = Field(default_factory=_new_id)
    workflow_id: str
    status: RunStatus = RunStatus.RUNNING
    current_step_ids: list[str] = Field(default_factory=list)
    completed_step_ids: list[str] = Field(default_factory=list)
    callback_secret: str
    input_payload: dict[str, Any] = Field(default_factory=dict)
    output_payload: Optional[dict[str, Any]] = None
    task_defaults: Optional[TaskDefaults] = None
    root_task_id: Optional[str] = None
    error: Optional[str] = None
    failed_step_id: Optional[str] = None
    external_id: Optional[str] = None
    source: Optional[str] = None
    created_by_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class BatchCounters(BaseModel):
    expected_count: int = 0
    received_count: int = 0
    processed_count: int = 0
    failed_count: int = 0


class ForeachConfig(BaseModel):
    items_source: Literal["payload", "callback"] = "payload"
    items_path: Optional[str] = None
    item_variable: str = "item"
    max_items: int = 100
    stream_complete: bool = False       # set by workflowUpdate.complete


class JoinConfig(BaseModel):
    await_step_id: Optional[str] = None
    await_task_id: Optional[str] = None
    scope: str = "children"
    min_success_percent: float = 100.0
    expected_count: Optional[int] = None
    input_path: Optional[str] = None
    boundary: Optional[JoinBoundary] = None
    advanced_at: Optional[datetime] = None   # claim marker: advancement past this join happened


class WebhookAttempt(BaseModel):
    attempt_number: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: Literal["success", "failed"]
    http_status: Optional[int] = None
    response_body: Any = None
    error: Optional[str] = None
    duration_ms: int = 0


class WebhookConfig(BaseModel):
    url: str
    method: str = "POST"
    wait_for_callback: bool = False
    attempts: list[WebhookAttempt] = Field(default_factory=list)


class ExternalConfig(BaseModel):
    callback_secret: str


class CallbackRequest(BaseModel):
    """One inbound callback attempt, appended whether or not it was accepted."""
    id: str = Field(default_factory=_new_id)
    url: Optional[str] = None
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    received_at: datetime = Field(default_factory=_utcnow)
    outcome: Literal["success", "failed"]
    error: Optional[str] = None
    child_task_ids: list[str] = Field(default_factory=list)


class Task(BaseModel):
    """Persisted unit of work for one step execution (or one foreach item)."""
    id: str = Field(default_factory=_new_id)
    title: str
    summary: Optional[str] = None
    extra_prompt: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    task_type: TaskType = TaskType.AGENT
    parent_id: Optional[str] = None
    workflow_id: Optional[str] = None
    workflow_run_id: Optional[str] = None
    workflow_step_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    foreach_config: Optional[ForeachConfig] = None
    batch_counters: Optional[BatchCounters] = None
    join_config: Optional[JoinConfig] = None
    webhook_config: Optional[WebhookConfig] = None
    external_config: Optional[ExternalConfig] = None
    decision_result: Optional[str] = None
    expected_quantity: Optional[int] = None
    assignee_id: Optional[str] = None
    urgency: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    due_at: Optional[datetime] = None
    created_by_id: Optional[str] = None
    callback_requests: list[CallbackRequest] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ── Events ─────────────────────────────────────────────────────────────

class FieldChange(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None


class TaskEvent(BaseModel):
    """Task notification from the task-management collaborator."""
    id: str
    type: TaskEventType
    task_id: str
    task: Task
    changes: list[FieldChange] = Field(default_factory=list)
    actor_id: Optional[str] = None
    actor_type: ActorType = ActorType.SYSTEM
    timestamp: datetime = Field(default_factory=_utcnow)


class WorkflowRunEvent(BaseModel):
    id: str
    type: WorkflowRunEventType
    workflow_run_id: str
    run: WorkflowRun                    # snapshot at publish time
    step_id: Optional[str] = None
    task_id: Optional[str] = None
    error: Optional[str] = None
    actor_id: Optional[str] = None
    actor_type: ActorType = ActorType.SYSTEM
    timestamp: datetime = Field(default_factory=_utcnow)


class CallbackResult(BaseModel):
    acknowledged: bool = True
    task_id: str
    task_type: TaskType
    child_task_ids: list[str] = Field(default_factory=list)
    received_count: int = 0
    expected_count: int = 0
    is_complete: bool = False
