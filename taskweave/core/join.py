"""
Join Barrier Evaluator — fan-in condition and result aggregation.

The barrier is recomputed from the full child set of the awaited task every
time it is checked; incrementally maintained counters are only refreshed from
that scan, never trusted on their own.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from taskweave.core.tasks import TaskMaterializer
from taskweave.exceptions import InvalidTaskTransition
from taskweave.types import JoinConfig, Task, TaskStatus, TaskType
from taskweave.workflows.paths import MISSING, get_path

logger = logging.getLogger(__name__)

REASON_COUNT_MET = "count_met"
REASON_THRESHOLD_MET = "threshold_met"
REASON_ALL_ACCOUNTED = "all_accounted_below_threshold"
REASON_DEADLINE_PASSED = "deadline_passed"


@dataclass
class JoinOutcome:
    satisfied: bool
    expected_count: int
    completed_count: int
    failed_count: int
    required_success_count: int
    status: Optional[TaskStatus] = None
    reason: Optional[str] = None
    results: list[Any] = field(default_factory=list)

    @property
    def success_percent(self) -> float:
        if not self.expected_count:
            return 100.0
        return round(self.completed_count * 100.0 / self.expected_count, 2)

    def as_metadata(self) -> dict[str, Any]:
        summary = {
            "success_count": self.completed_count,
            "failed_count": self.failed_count,
            "expected_count": self.expected_count,
            "required_success_count": self.required_success_count,
            "success_percent": self.success_percent,
            "reason": self.reason,
        }
        return {
            **summary,
            "aggregated_results": self.results,
            "output": {"results": self.results, **summary},
        }


def loop_work(children: list[Task]) -> list[Task]:
    """
    Children of a foreach that stand for one item each.

    A decision inside the loop routes its item to a target task created under
    the same foreach, so the decision itself is not counted.  A failed
    decision produced no target and counts as the item's failure.
    """
    return [c for c in children if c.task_type != TaskType.DECISION or c.status == TaskStatus.FAILED]


def _awaiting_stream(awaited: Task, expected: int) -> bool:
    """A callback-fed foreach with unknown size that has not signalled end-of-stream."""
    cfg = awaited.foreach_config
    return (
        cfg is not None
        and cfg.items_source == "callback"
        and not cfg.stream_complete
        and expected <= 0
    )


def evaluate(
    join_config: JoinConfig,
    awaited: Task,
    children: list[Task],
    now: Optional[datetime] = None,
) -> JoinOutcome:
    """Pure barrier evaluation for *join_config* over *awaited* and its children."""
    now = now or datetime.now(timezone.utc)

    if awaited.task_type == TaskType.FOREACH:
        children = loop_work(children)
        completed = [c for c in children if c.status == TaskStatus.COMPLETED]
        failed_count = sum(1 for c in children if c.status == TaskStatus.FAILED)
        known = awaited.batch_counters.expected_count if awaited.batch_counters else 0
        if join_config.expected_count is not None:
            expected = join_config.expected_count
        elif known > 0:
            expected = known
        else:
            expected = len(children)
        streaming = _awaiting_stream(awaited, join_config.expected_count or known)
    else:
        # Awaiting a single external task: it is its own and only result.
        completed = [awaited] if awaited.status == TaskStatus.COMPLETED else []
        failed_count = 1 if awaited.status == TaskStatus.FAILED else 0
        expected = 1
        streaming = False

    completed_count = len(completed)
    required = math.ceil(expected * join_config.min_success_percent / 100)
    outcome = JoinOutcome(
        satisfied=False,
        expected_count=expected,
        completed_count=completed_count,
        failed_count=failed_count,
        required_success_count=required,
    )

    deadline = join_config.boundary.deadline_at if join_config.boundary else None
    deadline_passed = deadline is not None and deadline <= now

    if not streaming and completed_count >= expected:
        outcome.reason = REASON_COUNT_MET
    elif not streaming and completed_count >= required:
        outcome.reason = REASON_THRESHOLD_MET
    elif not streaming and completed_count + failed_count >= expected:
        outcome.reason = REASON_ALL_ACCOUNTED
    elif deadline_passed:
        outcome.reason = REASON_DEADLINE_PASSED
    else:
        return outcome

    outcome.satisfied = True
    threshold_met = not streaming and completed_count >= required
    outcome.status = TaskStatus.COMPLETED if threshold_met else TaskStatus.FAILED
    for child in completed:
        value = child.metadata
        if join_config.input_path:
            value = get_path(child.metadata, join_config.input_path)
            if value is MISSING:
                continue
        outcome.results.append(value)
    return outcome


class JoinBarrierEvaluator:
    """Checks join tasks against the task they await and finalizes them."""

    def __init__(self, tasks: TaskMaterializer) -> None:
        self._tasks = tasks

    async def check_condition(self, join_task_id: str, awaited_task_id: str, force: bool = False) -> bool:
        """
        Re-evaluate the barrier of *join_task_id*.

        A join that is already terminal is reported satisfied without being
        rewritten, unless *force* is set (administrative rerun), in which case
        the aggregation is recomputed and written again.
        """
        join_task = await self._tasks.get(join_task_id)
        awaited = await self._tasks.find(awaited_task_id)
        if awaited is None:
            logger.warning("[Join] %s awaits missing task %s", join_task_id, awaited_task_id)
            return False
        if join_task.status.is_terminal and not force:
            return True

        children = await self._tasks.children(awaited.id) if awaited.task_type == TaskType.FOREACH else []
        if awaited.task_type == TaskType.FOREACH:
            work = loop_work(children)
            await self._tasks.update(awaited.id, fields={
                "batch_counters.processed_count": sum(1 for c in work if c.status == TaskStatus.COMPLETED),
                "batch_counters.failed_count": sum(1 for c in work if c.status == TaskStatus.FAILED),
            }, force=True)

        outcome = evaluate(join_task.join_config or JoinConfig(), awaited, children)
        if not outcome.satisfied:
            logger.debug("[Join] %s waiting: %d/%d completed (need %d)", join_task_id,
                         outcome.completed_count, outcome.expected_count, outcome.required_success_count)
            return False

        try:
            await self._tasks.transition(
                join_task_id, outcome.status, metadata=outcome.as_metadata(), force=force,
            )
        except InvalidTaskTransition:
            # Another checker finalized the join first.
            return True
        logger.info("[Join] %s satisfied (%s): %d completed, %d failed of %d → %s",
                    join_task_id, outcome.reason, outcome.completed_count,
                    outcome.failed_count, outcome.expected_count, outcome.status.value)

        if awaited.task_type == TaskType.FOREACH and not awaited.status.is_terminal:
            try:
                await self._tasks.transition(awaited.id, TaskStatus.COMPLETED)
            except InvalidTaskTransition:
                # Already finished by a concurrent checker or a run cancel.
                pass
        return True

    async def overdue_joins(self, now: Optional[datetime] = None) -> list[Task]:
        """Waiting join tasks whose boundary deadline has passed."""
        now = now or datetime.now(timezone.utc)
        candidates = await self._tasks.query({
            "task_type": TaskType.JOIN.value,
            "status": {"$in": [TaskStatus.WAITING.value, TaskStatus.IN_PROGRESS.value]},
            "join_config.boundary.deadline_at": {"$exists": True, "$ne": None},
        })
        return [t for t in candidates if t.join_config.boundary.deadline_at <= now]
