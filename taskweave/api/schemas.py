"""Pydantic models for API request/response. Mirrors types.py for API I/O."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from taskweave.types import TaskStatus


# ── Requests ──

class TaskStatusRequest(BaseModel):
    status: TaskStatus
    metadata: dict[str, Any] = Field(default_factory=dict)   # merged into task.metadata
    actor_id: Optional[str] = None


class LegacyForeachItemRequest(BaseModel):
    """Deprecated single-item body for ``/foreach/{step_id}/item``."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    item: Any = None
    expected_count: Optional[int] = None
    complete: Optional[bool] = None


# ── Responses ──

class HealthResponse(BaseModel):
    status: str                          # "ok" | "degraded"
    version: str
    services: dict[str, bool]


class LegacyForeachItemResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    acknowledged: bool
    foreach_task_id: str
    child_task_id: Optional[str] = None
    received_count: int
    expected_count: int
    is_complete: bool
