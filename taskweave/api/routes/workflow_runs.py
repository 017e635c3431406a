"""Workflow run routes: start, query, cancel, callbacks, and join rerun."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from taskweave.api.deps import get_orchestrator
from taskweave.api.schemas import LegacyForeachItemRequest, LegacyForeachItemResponse
from taskweave.core.orchestrator import RunOrchestrator
from taskweave.types import RunStatus, StartWorkflowInput

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/workflow-runs", tags=["workflow-runs"])

_HIDDEN_HEADERS = {"x-workflow-secret", "authorization"}


# ─────────────────────────────────────────────────────────────────────────────
# Request helpers
# ─────────────────────────────────────────────────────────────────────────────

def _request_info(request: Request) -> dict[str, Any]:
    return {
        "url": str(request.url),
        "method": request.method,
        "headers": {k: v for k, v in request.headers.items() if k.lower() not in _HIDDEN_HEADERS},
    }


async def _read_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Callback body must be JSON")
    if isinstance(body, dict):
        return body
    if isinstance(body, list):
        return {"items": body}
    return {"value": body}


# ─────────────────────────────────────────────────────────────────────────────
# Runs
# ─────────────────────────────────────────────────────────────────────────────

@router.post("", status_code=201)
async def start_workflow_run(
    body: StartWorkflowInput,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Start a run of a registered workflow."""
    run, root = await orchestrator.start_workflow(body, actor_id=x_actor_id)
    return {
        "run": run.model_dump(mode="json"),
        "root_task": root.model_dump(mode="json"),
        "message": "Workflow started successfully",
    }


@router.get("")
async def list_workflow_runs(
    workflow_id: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """List runs, newest first.  ``status`` may be comma-separated."""
    statuses = None
    if status:
        try:
            statuses = [RunStatus(s.strip()) for s in status.split(",") if s.strip()]
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status filter: {status!r}")
    page, limit = max(page, 1), max(min(limit, 200), 1)
    runs, total = await orchestrator.list_workflow_runs(
        workflow_id=workflow_id, statuses=statuses, page=page, limit=limit,
    )
    return {
        "data": [r.model_dump(mode="json") for r in runs],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }


@router.get("/{run_id}")
async def get_workflow_run(
    run_id: str,
    include_tasks: bool = False,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Get a run, optionally with every task it created (in creation order)."""
    if not include_tasks:
        run = await orchestrator.get_workflow_run(run_id)
        return run.model_dump(mode="json")
    run, tasks = await orchestrator.get_workflow_run_with_tasks(run_id)
    return {"run": run.model_dump(mode="json"), "tasks": [t.model_dump(mode="json") for t in tasks]}


@router.post("/{run_id}/cancel")
async def cancel_workflow_run(
    run_id: str,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Cancel a running run and all of its open tasks."""
    run = await orchestrator.cancel_workflow_run(run_id, actor_id=x_actor_id)
    return run.model_dump(mode="json")


# ─────────────────────────────────────────────────────────────────────────────
# Callbacks
# ─────────────────────────────────────────────────────────────────────────────

@router.post("/{run_id}/callback/{step_id}")
async def workflow_callback(
    run_id: str,
    step_id: str,
    request: Request,
    x_workflow_secret: Optional[str] = Header(default=None),
    x_expected_count: Optional[str] = Header(default=None),
    x_workflow_complete: Optional[str] = Header(default=None),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Unified callback: a single result, streamed items, or a batch of items.

    ``X-Expected-Count`` and ``X-Workflow-Complete: true`` override
    ``workflowUpdate.total`` and ``workflowUpdate.complete`` in the body.
    """
    payload = await _read_body(request)
    overrides: dict[str, Any] = {}
    if x_expected_count:
        try:
            overrides["total"] = int(x_expected_count)
        except ValueError:
            raise HTTPException(status_code=400, detail="X-Expected-Count must be an integer")
    if x_workflow_complete == "true":
        overrides["complete"] = True
    if overrides:
        payload["workflowUpdate"] = {**(payload.get("workflowUpdate") or {}), **overrides}

    result = await orchestrator.handle_callback(
        run_id, step_id, payload, x_workflow_secret, _request_info(request),
    )
    return result.model_dump(mode="json")


@router.post("/{run_id}/foreach/{step_id}/item", deprecated=True)
async def legacy_foreach_item(
    run_id: str,
    step_id: str,
    body: LegacyForeachItemRequest,
    request: Request,
    x_workflow_secret: Optional[str] = Header(default=None),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Deprecated single-item form of the callback endpoint."""
    payload: dict[str, Any] = {}
    if "item" in body.model_fields_set:
        payload["item"] = body.item
    if body.expected_count is not None or body.complete is not None:
        payload["workflowUpdate"] = {"total": body.expected_count, "complete": body.complete}

    result = await orchestrator.handle_callback(
        run_id, step_id, payload, x_workflow_secret, _request_info(request),
    )
    return LegacyForeachItemResponse(
        acknowledged=result.acknowledged,
        foreach_task_id=result.task_id,
        child_task_id=result.child_task_ids[0] if result.child_task_ids else None,
        received_count=result.received_count,
        expected_count=result.expected_count,
        is_complete=result.is_complete,
    ).model_dump(by_alias=True)


# ─────────────────────────────────────────────────────────────────────────────
# Administration
# ─────────────────────────────────────────────────────────────────────────────

@router.post("/joins/{task_id}/rerun")
async def rerun_join(
    task_id: str,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Re-aggregate a join against its awaited task."""
    satisfied = await orchestrator.rerun_join(task_id)
    task = await orchestrator.tasks.get(task_id)
    return {"satisfied": satisfied, "task": task.model_dump(mode="json")}
