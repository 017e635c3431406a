"""Request-scoped dependencies resolved from ``app.state``."""

from fastapi import HTTPException, Request

from taskweave.core.orchestrator import RunOrchestrator


def get_orchestrator(request: Request) -> RunOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Workflow engine not initialised.")
    return orchestrator
