"""
WorkflowValidator — structural correctness checker for WorkflowDefinition.

All checks are non-destructive reads of the step graph.  Warnings (soft
issues) are returned with a "WARNING:" prefix so callers can choose to treat
them differently from hard errors.
"""

from __future__ import annotations

from collections import deque

from taskweave.types import (
    DecisionStepConfig, HttpStepConfig, JoinStepConfig, StepType, WorkflowDefinition,
)


def next_step_ids(workflow: WorkflowDefinition, index: int) -> list[str]:
    """Declared connection targets, or the positional successor when there are none."""
    step = workflow.steps[index]
    if step.connections:
        return [c.target_step_id for c in step.connections]
    if index + 1 < len(workflow.steps):
        return [workflow.steps[index + 1].id]
    return []


class WorkflowValidator:
    """
    Validates the structural integrity of a WorkflowDefinition.

    Usage::

        validator = WorkflowValidator()
        errors = validator.validate(workflow)
        hard_errors = [e for e in errors if not e.startswith("WARNING:")]
        if hard_errors:
            raise WorkflowValidationError("Invalid workflow", violations=hard_errors)

    All checks are run even if earlier ones fail, so callers get the full
    error list in one shot.
    """

    def validate(self, workflow: WorkflowDefinition, max_steps: int = 100) -> list[str]:
        """
        Run all structural checks on a WorkflowDefinition.

        Returns:
            List of error strings.  Empty list means the workflow is valid.
            Items prefixed "WARNING:" are soft warnings, not hard failures.
        """
        errors: list[str] = []
        steps = workflow.steps
        by_id = {s.id: s for s in steps}

        # ── Check 1: Non-empty, bounded ───────────────────────────────────────
        if not steps:
            errors.append("Workflow has no steps.")
            return errors
        if len(steps) > max_steps:
            errors.append(
                f"Workflow has {len(steps)} steps; maximum allowed is {max_steps}."
            )

        # ── Check 2: Unique step ids ──────────────────────────────────────────
        seen: set[str] = set()
        for step in steps:
            if step.id in seen:
                errors.append(f"Duplicate step id {step.id!r}.")
            seen.add(step.id)

        # ── Check 3: Connection validity ──────────────────────────────────────
        for step in steps:
            for conn in step.connections:
                if conn.target_step_id not in by_id:
                    errors.append(
                        f"Step '{step.name}': connection targets unknown step "
                        f"{conn.target_step_id!r}."
                    )
                if conn.condition is not None and ":" not in conn.condition:
                    errors.append(
                        f"Step '{step.name}': condition {conn.condition!r} must look "
                        "like 'field:value1,value2'."
                    )

        # ── Check 4: Type-specific configuration ──────────────────────────────
        for step in steps:
            config = step.config
            if isinstance(config, HttpStepConfig) and not config.url:
                errors.append(f"{step.step_type.value.capitalize()} step '{step.name}' has no URL.")
            elif isinstance(config, DecisionStepConfig):
                if not step.connections:
                    errors.append(f"Decision step '{step.name}' has no connections.")
                if config.default_connection and config.default_connection not in by_id:
                    errors.append(
                        f"Decision step '{step.name}': default connection "
                        f"{config.default_connection!r} is not a step."
                    )
            elif isinstance(config, JoinStepConfig):
                if not 0 < config.min_success_percent <= 100:
                    errors.append(
                        f"Join step '{step.name}': minSuccessPercent must be in (0, 100]."
                    )
                awaited = by_id.get(config.await_step_id) if config.await_step_id else None
                if config.await_step_id and awaited is None:
                    errors.append(
                        f"Join step '{step.name}': awaitStepId {config.await_step_id!r} "
                        "is not a step."
                    )
                elif awaited is not None and awaited.step_type not in (StepType.FOREACH, StepType.EXTERNAL):
                    errors.append(
                        f"Join step '{step.name}' must await a foreach or external step, "
                        f"not {awaited.step_type.value!r}."
                    )
            elif step.step_type == StepType.FOREACH and not step.connections:
                errors.append(
                    f"WARNING: Foreach step '{step.name}' has no connections — "
                    "items will not be processed."
                )
            elif step.step_type == StepType.FLOW:
                errors.append(
                    f"WARNING: Flow step '{step.name}' is a placeholder and will stay pending."
                )

        # ── Check 5: Reachability (warning only) ──────────────────────────────
        index_of = {s.id: i for i, s in enumerate(steps)}
        visited: set[str] = set()
        queue: deque[str] = deque([steps[0].id])
        while queue:
            node = queue.popleft()
            if node in visited or node not in index_of:
                continue
            visited.add(node)
            queue.extend(next_step_ids(workflow, index_of[node]))
            config = by_id[node].config
            if isinstance(config, DecisionStepConfig) and config.default_connection:
                queue.append(config.default_connection)
        for step in steps:
            if step.id not in visited:
                errors.append(
                    f"WARNING: Step '{step.name}' (id={step.id!r}) is not reachable "
                    "from the first step."
                )

        return errors
