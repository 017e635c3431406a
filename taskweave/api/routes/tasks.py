"""POST /api/tasks/{task_id}/status — minimal task-management surface."""

import logging

from fastapi import APIRouter, Depends

from taskweave.api.deps import get_orchestrator
from taskweave.api.schemas import TaskStatusRequest
from taskweave.core.orchestrator import RunOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("/{task_id}")
async def get_task(task_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)):
    task = await orchestrator.tasks.get(task_id)
    return task.model_dump(mode="json")


@router.post("/{task_id}/status")
async def update_task_status(
    task_id: str,
    body: TaskStatusRequest,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Move a task through its state machine; terminal states advance the run."""
    task = await orchestrator.tasks.update_status(
        task_id, body.status, metadata=body.metadata or None, actor_id=body.actor_id,
    )
    return task.model_dump(mode="json")
