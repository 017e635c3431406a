"""Test fixtures: in-memory engine, mocked outbound HTTP, event recorder.

All engine tests should use these fixtures for consistency.
"""

import httpx
import pytest

from taskweave.config import TaskweaveConfig
from taskweave.core.orchestrator import RunOrchestrator
from taskweave.core.outbound import OutboundCaller
from taskweave.db.memory import InMemoryDocumentStore
from taskweave.events.event_bus import EventBus
from taskweave.types import WorkflowDefinition

BASE_URL = "http://engine.test/api"


class MockHttp:
    """Records outbound requests and answers them from a URL → (status, json) table."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responses: dict[str, tuple[int, object]] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.get(str(request.url), (200, {"ok": True}))
        return httpx.Response(status, json=body)


@pytest.fixture
def config():
    """Test configuration with safe defaults."""
    return TaskweaveConfig(
        debug=True,
        database_url="memory://",
        public_base_url=BASE_URL,
        outbound_timeout_seconds=5.0,
        join_deadline_check_interval=3600,
    )


@pytest.fixture
def mock_http():
    return MockHttp()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
async def engine(store, bus, config, mock_http):
    """RunOrchestrator over the in-memory store with outbound calls routed to mock_http."""
    outbound = OutboundCaller(
        client=httpx.AsyncClient(transport=httpx.MockTransport(mock_http.handler)),
    )
    orchestrator = RunOrchestrator(store, bus=bus, config=config, outbound=outbound)
    await orchestrator.start(sweep=False)
    yield orchestrator
    await orchestrator.stop()


@pytest.fixture
def run_events(bus):
    """Names of every workflow.run.* event, in publish order."""
    seen: list[str] = []

    def _record(event, data):
        if event.startswith("workflow.run."):
            seen.append(event)

    bus.subscribe("*", _record)
    return seen


@pytest.fixture
def linear_workflow():
    """trigger → manual review."""
    return WorkflowDefinition.model_validate({
        "id": "wf-linear",
        "name": "Linear",
        "steps": [
            {"id": "start", "name": "Start", "stepType": "trigger"},
            {"id": "review", "name": "Review", "stepType": "manual"},
        ],
    })


@pytest.fixture
def loop_workflow():
    """foreach over response.emails → manual send → join (80%)."""
    return WorkflowDefinition.model_validate({
        "id": "wf-loop",
        "name": "Email loop",
        "steps": [
            {
                "id": "loop", "name": "Loop", "stepType": "foreach",
                "itemsPath": "response.emails", "itemVariable": "email",
                "connections": [{"targetStepId": "send"}],
            },
            {
                "id": "send", "name": "Send", "stepType": "manual",
                "connections": [{"targetStepId": "gather"}],
            },
            {"id": "gather", "name": "Gather", "stepType": "join", "minSuccessPercent": 80},
        ],
    })
