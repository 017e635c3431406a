"""Tests for WorkflowManager, WorkflowValidator, and the definition loader."""

import json

import pytest
import yaml
from pydantic import ValidationError

from taskweave.exceptions import WorkflowNotFound, WorkflowValidationError
from taskweave.types import (
    DecisionStepConfig, ForeachStepConfig, HttpStepConfig, JoinStepConfig, StepType, WorkflowDefinition,
)
from taskweave.workflows.loader import load_definitions, load_directory
from taskweave.workflows.manager import WorkflowManager
from taskweave.workflows.validator import WorkflowValidator, next_step_ids


def _wf(steps, **kwargs) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate({"id": "wf", "name": "WF", "steps": steps, **kwargs})


def _hard(errors):
    return [e for e in errors if not e.startswith("WARNING:")]


def _warnings(errors):
    return [e for e in errors if e.startswith("WARNING:")]


# ── Step config normalization ────────────────────────────────────────────────


def test_external_step_defaults_to_waiting_for_callback():
    wf = _wf([{"id": "x", "name": "X", "stepType": "external", "externalConfig": {"url": "http://a"}}])
    config = wf.steps[0].config
    assert isinstance(config, HttpStepConfig)
    assert config.url == "http://a"
    assert config.method == "POST"
    assert config.wait_for_callback is True


def test_webhook_config_overrides_external_config():
    wf = _wf([{
        "id": "w", "name": "W", "stepType": "webhook",
        "externalConfig": {"url": "http://old", "headers": {"A": "1"}},
        "webhookConfig": {"url": "http://new", "method": "put", "headers": {"B": "2"},
                          "timeoutSeconds": 3, "successStatusCodes": [200]},
    }])
    config = wf.steps[0].config
    assert config.url == "http://new"
    assert config.method == "PUT"
    assert config.headers == {"A": "1", "B": "2"}
    assert config.timeout_seconds == 3
    assert config.success_status_codes == [200]
    assert config.wait_for_callback is False


def test_foreach_join_decision_configs():
    wf = _wf([
        {"id": "d", "name": "D", "stepType": "decision", "defaultConnection": "f",
         "connections": [{"targetStepId": "f", "condition": "kind:a"}]},
        {"id": "f", "name": "F", "stepType": "foreach", "itemsPath": "rows", "maxItems": 5,
         "connections": [{"targetStepId": "j"}]},
        {"id": "j", "name": "J", "stepType": "join",
         "joinConfig": {"minSuccessPercent": 50, "inputPath": "output"},
         "joinBoundary": {"deadlineSeconds": 60}},
    ])
    decision, foreach, join = (s.config for s in wf.steps)
    assert isinstance(decision, DecisionStepConfig) and decision.default_connection == "f"
    assert isinstance(foreach, ForeachStepConfig)
    assert (foreach.items_path, foreach.max_items, foreach.item_variable) == ("rows", 5, "item")
    assert isinstance(join, JoinStepConfig)
    assert join.min_success_percent == 50
    assert join.input_path == "output"
    assert join.boundary.deadline_seconds == 60


def test_definition_round_trips_through_json_dump():
    wf = _wf([{"id": "f", "name": "F", "stepType": "foreach", "itemsPath": "rows"}])
    again = WorkflowDefinition.model_validate(wf.model_dump(mode="json"))
    assert again.steps[0].config == wf.steps[0].config


# ── Validator ────────────────────────────────────────────────────────────────


class TestValidator:

    def setup_method(self):
        self.validator = WorkflowValidator()

    def test_valid_linear_workflow(self, linear_workflow):
        assert self.validator.validate(linear_workflow) == []

    def test_loop_workflow_is_valid(self, loop_workflow):
        assert _hard(self.validator.validate(loop_workflow)) == []

    def test_no_steps(self):
        assert self.validator.validate(_wf([])) == ["Workflow has no steps."]

    def test_too_many_steps(self):
        steps = [{"id": f"s{i}", "name": f"S{i}", "stepType": "manual"} for i in range(4)]
        errors = self.validator.validate(_wf(steps), max_steps=3)
        assert any("maximum allowed is 3" in e for e in errors)

    def test_duplicate_ids(self):
        errors = self.validator.validate(_wf([
            {"id": "a", "name": "A", "stepType": "manual"},
            {"id": "a", "name": "A2", "stepType": "manual"},
        ]))
        assert any("Duplicate step id 'a'" in e for e in errors)

    def test_dangling_connection_and_bad_condition(self):
        errors = _hard(self.validator.validate(_wf([
            {"id": "a", "name": "A", "stepType": "decision",
             "connections": [{"targetStepId": "ghost", "condition": "nocolon"}]},
        ])))
        assert any("connection targets unknown step 'ghost'" in e for e in errors)
        assert any("must look like 'field:value1,value2'" in e for e in errors)

    def test_http_step_without_url(self):
        errors = self.validator.validate(_wf([{"id": "w", "name": "Hook", "stepType": "webhook"}]))
        assert "Webhook step 'Hook' has no URL." in errors

    def test_decision_without_connections(self):
        errors = self.validator.validate(_wf([{"id": "d", "name": "Route", "stepType": "decision"}]))
        assert "Decision step 'Route' has no connections." in errors

    def test_join_threshold_bounds(self):
        errors = self.validator.validate(_wf([
            {"id": "j", "name": "J", "stepType": "join", "minSuccessPercent": 0},
        ]))
        assert any("minSuccessPercent must be in (0, 100]" in e for e in errors)

    def test_join_await_targets(self):
        errors = self.validator.validate(_wf([
            {"id": "m", "name": "M", "stepType": "manual"},
            {"id": "j1", "name": "J1", "stepType": "join", "awaitStepId": "nope"},
            {"id": "j2", "name": "J2", "stepType": "join", "awaitStepId": "m"},
        ]))
        assert any("awaitStepId 'nope' is not a step" in e for e in errors)
        assert any("must await a foreach or external step" in e for e in errors)

    def test_soft_warnings(self):
        errors = self.validator.validate(_wf([
            {"id": "start", "name": "Start", "stepType": "trigger",
             "connections": [{"targetStepId": "loop"}]},
            {"id": "loop", "name": "Loop", "stepType": "foreach"},
            {"id": "sub", "name": "Sub", "stepType": "flow"},
        ]))
        warnings = _warnings(errors)
        assert _hard(errors) == []
        assert any("Foreach step 'Loop' has no connections" in w for w in warnings)
        assert any("Flow step 'Sub' is a placeholder" in w for w in warnings)

    def test_unreachable_step_warning(self):
        errors = self.validator.validate(_wf([
            {"id": "a", "name": "A", "stepType": "manual", "connections": [{"targetStepId": "c"}]},
            {"id": "b", "name": "B", "stepType": "manual"},
            {"id": "c", "name": "C", "stepType": "manual"},
        ]))
        assert _hard(errors) == []
        assert any("'B'" in w and "not reachable" in w for w in _warnings(errors))

    def test_decision_default_counts_as_reachable(self):
        errors = self.validator.validate(_wf([
            {"id": "d", "name": "D", "stepType": "decision", "defaultConnection": "z",
             "connections": [{"targetStepId": "y", "condition": "k:v"}]},
            {"id": "y", "name": "Y", "stepType": "manual", "connections": [{"targetStepId": "y"}]},
            {"id": "z", "name": "Z", "stepType": "manual"},
        ]))
        assert not any("not reachable" in e for e in errors)


def test_next_step_ids_positional_fallback(linear_workflow):
    assert next_step_ids(linear_workflow, 0) == ["review"]
    assert next_step_ids(linear_workflow, 1) == []


# ── Loader ───────────────────────────────────────────────────────────────────


_YAML_DEF = {
    "id": "wf-yaml",
    "name": "From YAML",
    "steps": [
        {"id": "start", "name": "Start", "stepType": "trigger"},
        {"id": "hook", "name": "Hook", "stepType": "webhook",
         "webhookConfig": {"url": "http://hooks.test/{{input.id}}"}},
    ],
}


def test_load_yaml_definition(tmp_path):
    path = tmp_path / "one.yaml"
    path.write_text(yaml.safe_dump(_YAML_DEF))
    [wf] = load_definitions(path)
    assert wf.id == "wf-yaml"
    assert wf.steps[1].step_type == StepType.WEBHOOK
    assert wf.steps[1].config.url == "http://hooks.test/{{input.id}}"


def test_load_json_workflows_list(tmp_path):
    path = tmp_path / "many.json"
    path.write_text(json.dumps({"workflows": [
        {"id": "a", "name": "A", "steps": [{"id": "s", "name": "S", "stepType": "manual"}]},
        {"id": "b", "name": "B", "steps": []},
    ]}))
    assert [wf.id for wf in load_definitions(path)] == ["a", "b"]


def test_load_directory_skips_other_files(tmp_path):
    (tmp_path / "b.yml").write_text(yaml.safe_dump({**_YAML_DEF, "id": "b"}))
    (tmp_path / "a.json").write_text(json.dumps({**_YAML_DEF, "id": "a"}))
    (tmp_path / "notes.txt").write_text("not a workflow")
    assert [wf.id for wf in load_directory(tmp_path)] == ["a", "b"]


def test_load_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_definitions(tmp_path / "absent.yaml")


def test_load_invalid_definition(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump({"id": "x", "steps": []}))
    with pytest.raises(ValidationError):
        load_definitions(path)


# ── Manager ──────────────────────────────────────────────────────────────────


@pytest.fixture
def manager(store, config):
    return WorkflowManager(store, config=config)


@pytest.mark.asyncio
async def test_register_and_get(manager, linear_workflow):
    await manager.register(linear_workflow)
    loaded = await manager.get("wf-linear")
    assert loaded.name == "Linear"
    assert [s.id for s in loaded.steps] == ["start", "review"]


@pytest.mark.asyncio
async def test_register_replaces_existing(manager, linear_workflow):
    await manager.register(linear_workflow)
    await manager.register(linear_workflow.model_copy(update={"name": "Renamed"}))
    assert (await manager.get("wf-linear")).name == "Renamed"
    assert len(await manager.list_workflows()) == 1


@pytest.mark.asyncio
async def test_register_rejects_invalid(manager):
    with pytest.raises(WorkflowValidationError) as exc_info:
        await manager.register(_wf([{"id": "w", "name": "Hook", "stepType": "webhook"}]))
    assert "Webhook step 'Hook' has no URL." in exc_info.value.violations


@pytest.mark.asyncio
async def test_register_accepts_warnings(manager):
    wf = _wf([{"id": "sub", "name": "Sub", "stepType": "flow"}])
    assert await manager.register(wf) is wf


@pytest.mark.asyncio
async def test_get_unknown(manager):
    with pytest.raises(WorkflowNotFound) as exc_info:
        await manager.get("missing")
    assert exc_info.value.workflow_id == "missing"


@pytest.mark.asyncio
async def test_set_active_and_filtered_list(manager, linear_workflow, loop_workflow):
    await manager.register(linear_workflow)
    await manager.register(loop_workflow)
    updated = await manager.set_active("wf-linear", False)
    assert updated.is_active is False
    assert [wf.id for wf in await manager.list_workflows(active_only=True)] == ["wf-loop"]
    assert len(await manager.list_workflows()) == 2
    with pytest.raises(WorkflowNotFound):
        await manager.set_active("missing", True)
