"""
WorkflowManager — registration and lookup of WorkflowDefinition objects.

Definitions live in the ``workflows`` collection of the document store; the
engine only ever reads them.
"""

from __future__ import annotations

import logging
from typing import Optional

from taskweave.config import TaskweaveConfig
from taskweave.db.store import WORKFLOWS, DocumentStore
from taskweave.exceptions import WorkflowNotFound, WorkflowValidationError
from taskweave.types import WorkflowDefinition

from .validator import WorkflowValidator

logger = logging.getLogger(__name__)


class WorkflowManager:
    """
    Validates, stores, and loads workflow definitions.

    Args:
        store:      DocumentStore holding the ``workflows`` collection.
        validator:  WorkflowValidator instance.  A default instance is created
                    if not supplied.
        config:     TaskweaveConfig instance.  A default instance is created if
                    not supplied.
    """

    def __init__(
        self,
        store: DocumentStore,
        validator: Optional[WorkflowValidator] = None,
        config: Optional[TaskweaveConfig] = None,
    ) -> None:
        self._store = store
        self._validator = validator or WorkflowValidator()
        self._config = config or TaskweaveConfig()

    def _hard_errors(self, errors: list[str]) -> list[str]:
        return [e for e in errors if not e.startswith("WARNING:")]

    def validate(self, workflow: WorkflowDefinition) -> list[str]:
        return self._validator.validate(workflow, max_steps=self._config.max_workflow_steps)

    def _validate_or_raise(self, workflow: WorkflowDefinition) -> None:
        hard = self._hard_errors(self.validate(workflow))
        if hard:
            raise WorkflowValidationError(
                "Workflow validation failed", violations=hard
            )

    async def register(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        """
        Validate and store a definition, replacing any previous one with the same id.

        Raises:
            WorkflowValidationError: if the step graph is structurally invalid.
        """
        self._validate_or_raise(workflow)
        doc = workflow.model_dump(mode="json")
        if await self._store.get(WORKFLOWS, workflow.id) is None:
            await self._store.insert(WORKFLOWS, doc)
        else:
            await self._store.update(WORKFLOWS, {"id": workflow.id}, {"$set": doc})
        logger.info("[Workflows] Registered %r (%s, %d steps)", workflow.name, workflow.id, len(workflow.steps))
        return workflow

    async def get(self, workflow_id: str) -> WorkflowDefinition:
        """
        Load a definition by id.

        Raises:
            WorkflowNotFound: if no such definition is stored.
        """
        doc = await self._store.get(WORKFLOWS, workflow_id)
        if doc is None:
            raise WorkflowNotFound(
                f"Workflow '{workflow_id}' not found.", workflow_id=workflow_id
            )
        return WorkflowDefinition.model_validate(doc)

    async def list_workflows(self, active_only: bool = False) -> list[WorkflowDefinition]:
        flt = {"is_active": True} if active_only else {}
        docs = await self._store.find(WORKFLOWS, flt, sort=[("created_at", 1)])
        return [WorkflowDefinition.model_validate(d) for d in docs]

    async def set_active(self, workflow_id: str, is_active: bool) -> WorkflowDefinition:
        doc = await self._store.update(WORKFLOWS, {"id": workflow_id}, {"$set": {"is_active": is_active}})
        if doc is None:
            raise WorkflowNotFound(
                f"Workflow '{workflow_id}' not found.", workflow_id=workflow_id
            )
        return WorkflowDefinition.model_validate(doc)
