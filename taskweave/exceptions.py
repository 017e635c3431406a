"""Typed exception hierarchy. Every error taskweave can raise."""


class TaskweaveError(Exception):
    """Base exception for all taskweave errors."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.details = details or {}


# ── Workflow definitions ────────────────────────────────────────────────────


class WorkflowError(TaskweaveError):
    """Base exception for all workflow-related errors."""
    pass


class WorkflowNotFound(WorkflowError):
    """Requested workflow definition does not exist."""
    def __init__(self, message: str, workflow_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.workflow_id = workflow_id


class WorkflowInactiveError(WorkflowError):
    """Workflow exists but is not active, so it cannot be started."""
    def __init__(self, message: str, workflow_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.workflow_id = workflow_id


class WorkflowValidationError(WorkflowError):
    """Workflow definition is structurally invalid (dangling connections, no steps, etc.)."""
    def __init__(self, message: str, violations: list = None, **kwargs):
        super().__init__(message, **kwargs)
        self.violations = violations or []


class WorkflowStateError(WorkflowError):
    """Invalid run state transition (e.g., cancelling a completed run)."""
    pass


# ── Runs and tasks ──────────────────────────────────────────────────────────


class RunNotFound(TaskweaveError):
    """Workflow run ID is unknown."""
    def __init__(self, message: str, run_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.run_id = run_id


class TaskNotFound(TaskweaveError):
    """Task ID is unknown."""
    def __init__(self, message: str, task_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.task_id = task_id


class InvalidTaskTransition(TaskweaveError):
    """Requested task status change is not allowed by the task state machine."""
    def __init__(self, message: str, from_status: str = "", to_status: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.from_status = from_status
        self.to_status = to_status


# ── Callbacks ───────────────────────────────────────────────────────────────


class CallbackError(TaskweaveError):
    """Inbound callback could not be applied."""
    def __init__(self, message: str, run_id: str = "", step_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.run_id = run_id
        self.step_id = step_id


class InvalidCallbackSecret(CallbackError):
    """Callback secret matched neither the task, the run, nor a preceding external step."""
    pass


class CallbackTargetNotFound(CallbackError):
    """No waiting or in-progress task exists for the (run, step) pair."""
    pass


# ── Outbound calls ──────────────────────────────────────────────────────────


class OutboundCallError(TaskweaveError):
    """Engine-initiated HTTP call failed or returned a non-success status."""
    def __init__(self, message: str, status_code: int = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code
