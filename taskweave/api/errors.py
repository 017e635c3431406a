"""Map the taskweave exception hierarchy onto HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from taskweave.exceptions import (
    CallbackError, CallbackTargetNotFound, InvalidCallbackSecret, InvalidTaskTransition,
    RunNotFound, TaskNotFound, TaskweaveError, WorkflowInactiveError, WorkflowNotFound,
    WorkflowStateError, WorkflowValidationError,
)

logger = logging.getLogger(__name__)

# First match wins, so subclasses come before their bases.
_STATUS_CODES: list[tuple[type[TaskweaveError], int]] = [
    (WorkflowNotFound, 404),
    (RunNotFound, 404),
    (TaskNotFound, 404),
    (CallbackTargetNotFound, 404),
    (InvalidCallbackSecret, 401),
    (WorkflowValidationError, 422),
    (WorkflowInactiveError, 400),
    (WorkflowStateError, 409),
    (InvalidTaskTransition, 409),
    (CallbackError, 409),
]


def status_for(exc: TaskweaveError) -> int:
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(TaskweaveError)
    async def taskweave_error_handler(request: Request, exc: TaskweaveError):
        status_code = status_for(exc)
        if status_code == 500:
            logger.exception("[API] Unhandled engine error on %s", request.url.path, exc_info=exc)
        content = {"detail": str(exc)}
        if isinstance(exc, WorkflowValidationError) and exc.violations:
            content["violations"] = exc.violations
        return JSONResponse(content, status_code=status_code)
