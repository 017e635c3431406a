"""Workflow definition routes: list and register."""

import logging

from fastapi import APIRouter, Depends

from taskweave.api.deps import get_orchestrator
from taskweave.core.orchestrator import RunOrchestrator
from taskweave.types import WorkflowDefinition

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/workflows", tags=["workflows"])


@router.get("")
async def list_workflows(
    active_only: bool = False,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """List registered workflow definitions."""
    workflows = await orchestrator.workflows.list_workflows(active_only=active_only)
    return {"workflows": [w.model_dump(mode="json") for w in workflows]}


@router.post("", status_code=201)
async def create_workflow(
    body: WorkflowDefinition,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Validate and register a definition (replacing one with the same id)."""
    workflow = await orchestrator.workflows.register(body)
    warnings = [e for e in orchestrator.workflows.validate(workflow) if e.startswith("WARNING:")]
    return {"workflow": workflow.model_dump(mode="json"), "warnings": warnings}


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    workflow = await orchestrator.workflows.get(workflow_id)
    return workflow.model_dump(mode="json")
