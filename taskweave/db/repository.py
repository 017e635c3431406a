"""Data access for workflow runs.

Every run mutation after creation is a conditional write: terminal runs are
never touched again.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from taskweave.db.store import WORKFLOW_RUNS, DocumentStore
from taskweave.exceptions import RunNotFound
from taskweave.types import RunStatus, WorkflowRun


class RunRepository:
    """All workflow_runs collection operations."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def insert(self, run: WorkflowRun) -> WorkflowRun:
        await self.store.insert(WORKFLOW_RUNS, run.model_dump(mode="json"))
        return run

    async def find(self, run_id: str) -> Optional[WorkflowRun]:
        doc = await self.store.get(WORKFLOW_RUNS, run_id)
        return WorkflowRun.model_validate(doc) if doc else None

    async def get(self, run_id: str) -> WorkflowRun:
        """Load a run by id.

        Raises:
            RunNotFound: if no such run exists.
        """
        run = await self.find(run_id)
        if run is None:
            raise RunNotFound(f"Workflow run '{run_id}' not found.", run_id=run_id)
        return run

    async def update_running(self, run_id: str, update: dict[str, Any]) -> Optional[WorkflowRun]:
        """Apply *update* only while the run is still running."""
        doc = await self.store.update(
            WORKFLOW_RUNS, {"id": run_id, "status": RunStatus.RUNNING.value}, update
        )
        return WorkflowRun.model_validate(doc) if doc else None

    async def mark_step_started(self, run_id: str, step_id: str) -> Optional[WorkflowRun]:
        return await self.update_running(run_id, {"$addToSet": {"current_step_ids": step_id}})

    async def mark_step_finished(self, run_id: str, step_id: str) -> Optional[WorkflowRun]:
        return await self.update_running(run_id, {
            "$pull": {"current_step_ids": step_id},
            "$addToSet": {"completed_step_ids": step_id},
        })

    async def finish(self, run_id: str, status: RunStatus, **fields: Any) -> Optional[WorkflowRun]:
        """Move a running run to a terminal *status*; None when it already left running."""
        now = datetime.now(timezone.utc)
        return await self.update_running(run_id, {
            "$set": {"status": status.value, "completed_at": now, **fields},
        })

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[list[RunStatus]] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[WorkflowRun], int]:
        """Newest first, paginated."""
        flt: dict[str, Any] = {}
        if workflow_id:
            flt["workflow_id"] = workflow_id
        if statuses:
            flt["status"] = {"$in": [s.value for s in statuses]}
        total = await self.store.count(WORKFLOW_RUNS, flt)
        docs = await self.store.find(
            WORKFLOW_RUNS, flt, sort=[("created_at", -1)],
            limit=limit, skip=max(page - 1, 0) * limit,
        )
        return [WorkflowRun.model_validate(d) for d in docs], total
