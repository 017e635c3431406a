"""GET /health — liveness plus a document-store check."""

import logging

from fastapi import APIRouter, Request

from taskweave.api.schemas import HealthResponse
from taskweave.db.store import WORKFLOWS
from taskweave.version import __version__

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Check health of the API and its document store."""
    services: dict[str, bool] = {"api": True, "store": False, "engine": False}

    try:
        await request.app.state.store.count(WORKFLOWS, {})
        services["store"] = True
    except Exception as exc:
        logger.warning(f"[health] Store check failed: {exc}")

    services["engine"] = getattr(request.app.state, "orchestrator", None) is not None

    overall = "ok" if all(services.values()) else "degraded"
    return HealthResponse(status=overall, version=__version__, services=services)
