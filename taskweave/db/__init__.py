"""taskweave.db — document-store collaborator (in-memory and SQLAlchemy-backed)."""

from taskweave.db.memory import InMemoryDocumentStore
from taskweave.db.store import DocumentStore, TASKS, WORKFLOW_RUNS, WORKFLOWS

__all__ = ["DocumentStore", "InMemoryDocumentStore", "TASKS", "WORKFLOW_RUNS", "WORKFLOWS"]
