"""FastAPI application: webhook ingestion and agent control."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request

from localpipeline.app.config import Settings, settings
from localpipeline.git.worktree_manager import WorktreeManager
from localpipeline.orchestrator.card_transitions import transition_card
from localpipeline.orchestrator.dispatcher import DispatchRunner
from localpipeline.orchestrator.orchestration_loop import Orchestrator
from localpipeline.persistence.activity_log import ActivityLog
from localpipeline.persistence.agent_registry import AgentRegistry
from localpipeline.persistence.failure_store import FailureStore
from localpipeline.providers.base import CardStatus
from localpipeline.queue.work_queue import WorkQueue
from localpipeline.webhooks.dispatcher import webhook_dispatch
from localpipeline.webhooks.handlers import (
    parse_github_pr_merge,
    parse_github_webhook,
    parse_linear_webhook,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def build_orchestrator(config: Settings) -> Orchestrator:
    """Wire the stores, worktree manager and dispatch runner from settings."""
    registry = AgentRegistry(config.agents_path, config.agent_names)
    activity = ActivityLog(config.activity_path)
    runner = DispatchRunner(
        registry=registry,
        activity=activity,
        workspace=WorktreeManager(config.repo_root, trunk_branch=config.trunk_branch),
        repo_root=config.repo_root,
        logs_dir=config.logs_dir,
        agent_command=config.agent_command,
        install_command=config.install_command,
        instructions_filename=config.instructions_filename,
    )
    return Orchestrator(
        registry=registry,
        queue=WorkQueue(config.queue_path),
        failures=FailureStore(config.failures_path),
        activity=activity,
        runner=runner,
        max_retries=config.max_retries,
        poll_interval=config.poll_interval,
    )


def create_app(orchestrator: Optional[Orchestrator] = None, run_loop: bool = True) -> FastAPI:
    """
    Create the API application.

    Args:
        orchestrator: Orchestrator to serve (default: built from settings at startup)
        run_loop: Start the polling loop in the application lifespan
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown."""
        # Startup
        logger.info("Starting localpipeline API")
        if getattr(app.state, "orchestrator", None) is None:
            app.state.orchestrator = build_orchestrator(settings)
        orch: Orchestrator = app.state.orchestrator

        stop_event = asyncio.Event()
        loop_task = asyncio.create_task(orch.run(stop_event)) if run_loop else None

        yield

        # Shutdown
        logger.info("Shutting down localpipeline API")
        stop_event.set()
        if loop_task:
            loop_task.cancel()
            await asyncio.gather(loop_task, return_exceptions=True)
        await orch.shutdown(timeout=settings.shutdown_timeout)

    app = FastAPI(
        title="localpipeline API",
        description="Work-item pipeline delegating tracker items to coding agents",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.orchestrator = orchestrator

    def get_orchestrator(request: Request) -> Orchestrator:
        return request.app.state.orchestrator

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "localpipeline API",
            "version": "0.1.0",
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/agents")
    async def list_agents(request: Request) -> list[dict[str, Any]]:
        return get_orchestrator(request).snapshot()

    @app.post("/agents/{name}/release")
    async def release_agent(name: str, request: Request):
        orch = get_orchestrator(request)
        if name not in orch.registry.agent_names:
            raise HTTPException(status_code=404, detail=f"Unknown agent: {name}")
        orch.release_agent(name)
        return orch.registry.get_agent(name).to_record()

    @app.get("/queue")
    async def get_queue(request: Request):
        return [item.model_dump(exclude_none=True) for item in get_orchestrator(request).queue.get_all()]

    @app.get("/failures")
    async def get_failures(request: Request):
        failures = get_orchestrator(request).failures
        failures.reload()
        return [f.model_dump(by_alias=True, exclude_none=True) for f in failures.get_all()]

    @app.get("/activity")
    async def get_activity(request: Request, agent: Optional[str] = None, limit: int = 50):
        events = get_orchestrator(request).activity.read_events(agent=agent, limit=limit)
        return [e.model_dump(mode="json", by_alias=True, exclude_none=True) for e in events]

    @app.post("/worktrees/sync")
    async def sync_worktrees(request: Request):
        synced = await get_orchestrator(request).sync_worktrees()
        return {"synced": synced}

    @app.post("/webhooks/linear")
    async def linear_webhook(request: Request):
        item = parse_linear_webhook(await request.json())
        if item is None:
            return {"ignored": True}
        return webhook_dispatch(item, get_orchestrator(request)).model_dump()

    @app.post("/webhooks/github")
    async def github_webhook(request: Request):
        body = await request.json()
        orch = get_orchestrator(request)

        merge = parse_github_pr_merge(body)
        if merge is not None:
            moved = await transition_card(merge.work_item_id, CardStatus.DONE, orch.providers)
            return {"merged": merge.work_item_id, "moved": moved}

        item = parse_github_webhook(body)
        if item is None:
            return {"ignored": True}
        return webhook_dispatch(item, orch).model_dump()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
