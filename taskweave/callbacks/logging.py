"""Structured JSON logging callback for task and workflow-run events."""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from taskweave.types import TaskEvent, WorkflowRunEvent

logger = logging.getLogger("taskweave.audit")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LoggingCallback:
    """Emits one JSON log line per bus event.

    Each log line is a self-contained JSON object with:
      - event: event type name
      - ts: ISO-8601 UTC timestamp
      - relevant ids depending on event

    Log level: INFO for normal events, ERROR for failures.
    Logger name: taskweave.audit (configure in your logging setup)

    Subscribe it to every event::

        bus.subscribe("*", LoggingCallback())
    """

    async def __call__(self, event: str, data: Any) -> None:
        if isinstance(data, WorkflowRunEvent):
            line = {
                "event": event,
                "ts": _now(),
                "workflow_run_id": data.workflow_run_id,
                "workflow_id": data.run.workflow_id,
                "run_status": data.run.status.value,
            }
            if data.step_id:
                line["step_id"] = data.step_id
            if data.task_id:
                line["task_id"] = data.task_id
            if data.error:
                line["error"] = data.error[:200]
            level = logging.ERROR if event.endswith(".failed") else logging.INFO
            logger.log(level, json.dumps(line))
        elif isinstance(data, TaskEvent):
            logger.info(json.dumps({
                "event": event,
                "ts": _now(),
                "task_id": data.task_id,
                "workflow_run_id": data.task.workflow_run_id,
                "step_id": data.task.workflow_step_id,
                "status": data.task.status.value,
                "changed": [c.field for c in data.changes],
            }))
        else:
            logger.info(json.dumps({"event": event, "ts": _now(), "data": str(data)[:200]}))
