"""Path evaluator, template resolver, and decision conditions."""

from taskweave.core.executor import choose_connection, evaluate_condition
from taskweave.types import StepConnection
from taskweave.workflows.paths import MISSING, get_or, get_path, set_path, unset_path
from taskweave.workflows.templates import (
    TemplateContext, render_title, resolve, resolve_body, resolve_value, stringify,
)


def _ctx(**overrides) -> TemplateContext:
    values = dict(
        run_id="R1",
        step_id="notify",
        task_id="T",
        callback_secret="wfsec_abc",
        input_payload={"user": {"name": "Ann"}, "count": 3, "tags": ["a", "b"]},
        base_url="http://engine.test/api/",
    )
    values.update(overrides)
    return TemplateContext(**values)


# ── Paths ────────────────────────────────────────────────────────────────────


class TestPaths:

    def test_nested_dicts_and_list_indices(self):
        doc = {"a": {"b": [{"c": 1}, {"c": 2}]}}
        assert get_path(doc, "a.b.1.c") == 2
        assert get_path(doc, "$.a.b.0.c") == 1

    def test_missing_key_is_missing(self):
        assert get_path({"a": {}}, "a.b") is MISSING

    def test_non_container_intermediate_is_missing(self):
        assert get_path({"a": 5}, "a.b") is MISSING
        assert get_path({"a": [1]}, "a.7") is MISSING

    def test_none_value_is_found(self):
        assert get_path({"a": None}, "a") is None

    def test_get_or_default(self):
        assert get_or({}, "x.y", default="d") == "d"

    def test_set_path_creates_intermediates(self):
        doc = {"a": 1}
        set_path(doc, "b.c.d", True)
        assert doc == {"a": 1, "b": {"c": {"d": True}}}

    def test_unset_path(self):
        doc = {"a": {"b": 1, "c": 2}}
        unset_path(doc, "a.b")
        unset_path(doc, "x.y")
        assert doc == {"a": {"c": 2}}


# ── Templates ────────────────────────────────────────────────────────────────


class TestTemplates:

    def test_input_and_task_tokens(self):
        assert resolve("{{input.user.name}} <{{taskId}}>", _ctx()) == "Ann <T>"

    def test_missing_path_renders_empty(self):
        assert resolve("{{missing.path}}", _ctx()) == ""

    def test_bare_path_reads_input(self):
        assert resolve("{{ user.name }}", _ctx()) == "Ann"

    def test_run_tokens(self):
        assert resolve("{{workflowRunId}}/{{runId}}/{{stepId}}/{{callbackSecret}}", _ctx()) == \
            "R1/R1/notify/wfsec_abc"

    def test_system_webhook_url_points_at_current_step(self):
        assert resolve("{{systemWebhookUrl}}", _ctx()) == \
            "http://engine.test/api/workflow-runs/R1/callback/notify"

    def test_callback_url_points_at_downstream_foreach(self):
        ctx = _ctx(next_foreach_step_id="loop")
        assert resolve("{{callbackUrl}}", ctx) == "http://engine.test/api/workflow-runs/R1/callback/loop"

    def test_callback_url_without_foreach_is_own_step(self):
        assert resolve("{{callbackUrl}}", _ctx()) == resolve("{{systemWebhookUrl}}", _ctx())

    def test_structured_values_are_json(self):
        assert resolve("{{input.tags}}", _ctx()) == '["a", "b"]'

    def test_string_body_is_parsed_as_json(self):
        body = resolve_body('{"name": "{{input.user.name}}", "n": {{count}}}', _ctx())
        assert body == {"name": "Ann", "n": 3}

    def test_non_json_body_stays_text(self):
        assert resolve_body("hello {{user.name}}", _ctx()) == "hello Ann"

    def test_no_body_template_sends_input(self):
        assert resolve_body(None, _ctx()) == _ctx().input_payload

    def test_dict_body_resolves_leaves(self):
        body = resolve_value({"who": "{{user.name}}", "list": ["{{taskId}}", 1]}, _ctx())
        assert body == {"who": "Ann", "list": ["T", 1]}

    def test_stringify(self):
        assert stringify(None) == ""
        assert stringify(MISSING) == ""
        assert stringify(True) == "true"
        assert stringify(2.5) == "2.5"

    def test_render_title(self):
        assert render_title("Ticket {{input.id}}", {"id": 7}, "fallback") == "Ticket 7"
        assert render_title("{{nothing}}", {}, "Fallback") == "Fallback"
        assert render_title(None, {"id": 7}, "Fallback") == "Fallback"


# ── Conditions ───────────────────────────────────────────────────────────────


class TestConditions:

    CONNECTIONS = [
        StepConnection(target_step_id="A", condition="type:billing"),
        StepConnection(target_step_id="B", condition="type:sales,support"),
    ]

    def test_match_any_listed_value(self):
        assert evaluate_condition("type:sales,support", {"type": "support"})
        assert not evaluate_condition("type:sales,support", {"type": "billing"})

    def test_nested_field_and_numbers(self):
        assert evaluate_condition("order.total:100", {"order": {"total": 100}})

    def test_malformed_or_missing(self):
        assert not evaluate_condition("billing", {"billing": "x"})
        assert not evaluate_condition("type:billing", {})

    def test_routes_to_matching_connection(self):
        assert choose_connection(self.CONNECTIONS, "C", {"type": "sales"}) == "B"

    def test_falls_back_to_default(self):
        assert choose_connection(self.CONNECTIONS, "C", {"type": "other"}) == "C"

    def test_falls_back_to_unconditioned_connection(self):
        connections = self.CONNECTIONS + [StepConnection(target_step_id="D")]
        assert choose_connection(connections, None, {"type": "other"}) == "D"

    def test_no_route(self):
        assert choose_connection(self.CONNECTIONS, None, {"type": "other"}) is None
