"""
Template resolution for outbound call URLs, headers, bodies, and task titles.

Recognized tokens (``{{ token }}``):

- ``workflowRunId`` / ``runId``, ``stepId``, ``taskId``, ``callbackSecret``
- ``systemWebhookUrl``: the callback URL for the current step
- ``callbackUrl``: like ``systemWebhookUrl`` but pointing at the downstream
  foreach step when there is one, so an external service can stream items
  straight into the loop
- ``input`` / ``input.<path>``: lookups against the step input payload
- ``<path>``: bare lookups against the same payload

Unresolved tokens render as the empty string.  Resolution never raises.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from taskweave.workflows.paths import MISSING, get_path

TOKEN_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


@dataclass
class TemplateContext:
    run_id: str
    step_id: str
    task_id: str = ""
    callback_secret: str = ""
    input_payload: dict[str, Any] = field(default_factory=dict)
    next_foreach_step_id: Optional[str] = None
    base_url: str = ""

    def callback_url(self, step_id: Optional[str] = None) -> str:
        base = self.base_url.rstrip("/")
        return f"{base}/workflow-runs/{self.run_id}/callback/{step_id or self.step_id}"


def stringify(value: Any) -> str:
    if value is None or value is MISSING:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, bool)):
        return json.dumps(value, default=str)
    return str(value)


def _lookup(token: str, ctx: TemplateContext) -> Any:
    if token in ("workflowRunId", "runId"):
        return ctx.run_id
    if token == "stepId":
        return ctx.step_id
    if token == "taskId":
        return ctx.task_id
    if token == "callbackSecret":
        return ctx.callback_secret
    if token == "systemWebhookUrl":
        return ctx.callback_url()
    if token == "callbackUrl":
        return ctx.callback_url(ctx.next_foreach_step_id)
    if token == "input":
        return ctx.input_payload
    if token.startswith("input."):
        return get_path(ctx.input_payload, token[len("input."):])
    return get_path(ctx.input_payload, token)


def resolve(template: str, ctx: TemplateContext) -> str:
    """Replace every ``{{token}}`` in *template*."""
    if not template:
        return template or ""
    return TOKEN_RE.sub(lambda m: stringify(_lookup(m.group(1), ctx)), template)


def resolve_value(value: Any, ctx: TemplateContext) -> Any:
    """Resolve every string leaf of a nested dict/list structure."""
    if isinstance(value, str):
        return resolve(value, ctx)
    if isinstance(value, dict):
        return {k: resolve_value(v, ctx) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, ctx) for v in value]
    return value


def resolve_body(template: Any, ctx: TemplateContext) -> Any:
    """Build an outbound JSON body.

    String templates are resolved then parsed as JSON (falling back to the raw
    string); structured templates are resolved leaf by leaf; no template sends
    the step input as-is.
    """
    if template is None:
        return ctx.input_payload
    if isinstance(template, str):
        rendered = resolve(template, ctx)
        try:
            return json.loads(rendered)
        except ValueError:
            return rendered
    return resolve_value(template, ctx)


def render_title(template: Optional[str], payload: dict[str, Any], fallback: str) -> str:
    """Resolve a title template against *payload* only; empty results use *fallback*."""
    if not template:
        return fallback

    def _title_token(match: re.Match) -> str:
        token = match.group(1)
        if token.startswith("input."):
            token = token[len("input."):]
        return stringify(get_path(payload, token))

    rendered = TOKEN_RE.sub(_title_token, template).strip()
    return rendered or fallback
