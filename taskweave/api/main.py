"""FastAPI application factory with lifespan management."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskweave.config import TaskweaveConfig, config as default_config
from taskweave.version import __version__

logger = logging.getLogger(__name__)


def _make_lifespan(settings: TaskweaveConfig):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan: startup and shutdown."""
        # ── Startup ──
        logging.basicConfig(level=settings.log_level.upper())
        logger.info(f"taskweave v{__version__} starting...")

        # 1. Document store
        from taskweave.db.database import create_store
        store = await create_store(settings.database_url, echo=settings.debug)
        app.state.store = store

        # 2. Engine + audit log subscriber
        from taskweave.callbacks.logging import LoggingCallback
        from taskweave.core.orchestrator import RunOrchestrator
        from taskweave.events.event_bus import WILDCARD
        orchestrator = RunOrchestrator(store, config=settings)
        orchestrator.subscribe(WILDCARD, LoggingCallback())
        await orchestrator.start()
        app.state.orchestrator = orchestrator

        # 3. Definitions from disk (idempotent: re-registering replaces by id)
        if settings.workflows_dir:
            from taskweave.workflows.loader import load_directory
            for definition in load_directory(settings.workflows_dir):
                await orchestrator.workflows.register(definition)

        logger.info(f"taskweave v{__version__} ready")

        yield

        # ── Shutdown ──
        logger.info("taskweave shutting down...")
        await orchestrator.stop()
        close = getattr(store, "close", None)
        if close is not None:
            await close()

    return lifespan


def create_app(settings: Optional[TaskweaveConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or default_config
    app = FastAPI(
        title="taskweave",
        description="Workflow execution engine: steps, fan-out/fan-in, callbacks.",
        version=__version__,
        lifespan=_make_lifespan(settings),
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
        allow_headers=["*"],
    )

    from taskweave.api.errors import register_exception_handlers
    register_exception_handlers(app)

    # Routes
    from taskweave.api.routes import health, tasks, workflow_runs, workflows
    app.include_router(health.router)
    app.include_router(workflow_runs.router, prefix="/api")
    app.include_router(tasks.router, prefix="/api")
    app.include_router(workflows.router, prefix="/api")

    return app


app = create_app()
