"""
FastAPI Server for Agentrelay

This module provides the REST API for running relays.

Endpoints:
- POST /relay: Start a relay turn for a user message
- GET /stream/{run_id}: SSE stream of relay events
- GET /status/{run_id}: Check run status
- GET /relay/state: Observable relay state (turns, running agent, cost)
- POST /relay/stop: Stop the running relay
- POST /relay/reset: Clear history and start a new conversation
- GET /agents: The agent roster
- GET /runs: List runs
- GET /debug/log: Formatted debug event log
- GET /health: Health check
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from agentrelay import __version__
from agentrelay.agent.orchestrator import RelayOrchestrator
from agentrelay.config import configure_logging, get_settings
from agentrelay.protocols.events import AgentEvent, EventType, create_error_event
from agentrelay.server.streaming import StreamManager, get_stream_manager

logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Agentrelay",
    description="Sequential multi-agent relay with targeted revision requests",
    version=__version__,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Orchestrator wiring
# =============================================================================

_orchestrator: Optional[RelayOrchestrator] = None

# Strong references to fire-and-forget publish tasks
_background_tasks: set[asyncio.Task] = set()


def _spawn(coro: Any) -> None:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


def attach_stream_manager(
    orchestrator: RelayOrchestrator,
    manager: StreamManager,
) -> None:
    """Forward every relay event to the run stream named by its turn id."""

    def on_event(event: AgentEvent) -> None:
        if not event.turn_id:
            return
        # Tasks run in creation order, so events reach the stream in order
        _spawn(manager.publish_event(event.turn_id, event))
        if event.event_type == EventType.RUN_END:
            _spawn(manager.complete_run(
                event.turn_id,
                _turn_result(orchestrator, event.turn_id),
                cancelled=bool(event.data.get("cancelled")),
            ))

    orchestrator.on_event = on_event


def _turn_result(orchestrator: RelayOrchestrator, run_id: str) -> dict[str, Any]:
    for turn in orchestrator.relay_turns:
        if turn.turn_id == run_id:
            return turn.to_dict()
    return {"turn_id": run_id}


def get_orchestrator() -> RelayOrchestrator:
    """Get the global orchestrator, building it from settings on first use."""
    global _orchestrator
    if _orchestrator is None:
        set_orchestrator(RelayOrchestrator.from_settings(get_settings()))
    return _orchestrator


def set_orchestrator(orchestrator: Optional[RelayOrchestrator]) -> None:
    """Install the orchestrator used by the API (None to rebuild lazily)."""
    global _orchestrator
    _orchestrator = orchestrator
    if orchestrator is not None:
        attach_stream_manager(orchestrator, get_stream_manager())


# =============================================================================
# Request/Response Models
# =============================================================================

class RelayRequest(BaseModel):
    """Request to start a relay."""

    message: str = Field(..., min_length=1, description="The user request to relay")


class RelayResponse(BaseModel):
    """Response to relay request."""

    run_id: str = Field(..., description="Run ID for tracking")
    status: str = Field(..., description="Initial status")
    stream_url: str = Field(..., description="URL for SSE streaming")


class RunStatusResponse(BaseModel):
    """Run status response."""

    run_id: str
    user_message: str
    status: str
    started_at: str
    completed_at: Optional[str] = None
    event_count: int
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    backend: str
    agents: int


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        backend=get_settings().llm_backend,
        agents=len(get_orchestrator().directory),
    )


@app.get("/agents")
async def list_agents() -> list[dict[str, Any]]:
    """List the agents in relay order."""
    return get_orchestrator().directory.to_list()


@app.post("/relay", response_model=RelayResponse)
async def start_relay(request: RelayRequest) -> RelayResponse:
    """Start a relay turn.

    The relay runs in the background. Use the returned stream_url to
    receive real-time updates via SSE.
    """
    orchestrator = get_orchestrator()
    if not orchestrator.directory:
        raise HTTPException(status_code=503, detail="No agents configured")
    if orchestrator.is_running:
        raise HTTPException(status_code=409, detail="A relay is already running")

    manager = get_stream_manager()
    run_id = await manager.create_run(user_message=request.message)

    handle = orchestrator.start_relay(request.message, run_id=run_id)
    if handle is None:
        await manager.fail_run(run_id, "Relay could not be started")
        raise HTTPException(status_code=409, detail="A relay is already running")

    handle.task.add_done_callback(partial(_on_relay_done, run_id))

    return RelayResponse(
        run_id=run_id,
        status="running",
        stream_url=f"/stream/{run_id}",
    )


def _on_relay_done(run_id: str, task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is None:
        return
    logger.error(f"Relay run failed: {error}", exc_info=error)
    manager = get_stream_manager()
    event = create_error_event(str(error), error_type=type(error).__name__)
    event.turn_id = run_id
    _spawn(manager.publish_event(run_id, event))
    _spawn(manager.fail_run(run_id, str(error)))


@app.get("/stream/{run_id}")
async def stream_events(run_id: str, from_seq: int = 0):
    """Stream relay events via SSE.

    Connect to this endpoint to receive real-time updates about the
    relay's progress. Events are sent as Server-Sent Events.
    """
    manager = get_stream_manager()
    stream = await manager.get_stream(run_id)

    if not stream:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")

    async def event_generator():
        async for message in stream.subscribe(from_sequence=from_seq):
            yield message.to_sse()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


@app.get("/status/{run_id}", response_model=RunStatusResponse)
async def get_run_status(run_id: str) -> RunStatusResponse:
    """Get the status of a relay run."""
    manager = get_stream_manager()
    run = await manager.get_run(run_id)

    if not run:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")

    return RunStatusResponse(**run.to_dict())


@app.get("/relay/state")
async def relay_state() -> dict[str, Any]:
    """Get the observable relay state."""
    orchestrator = get_orchestrator()
    return {
        **orchestrator.snapshot(),
        "cost": orchestrator.get_cost_summary(),
    }


@app.post("/relay/stop")
async def stop_relay() -> dict[str, Any]:
    """Stop the running relay."""
    stopped = get_orchestrator().stop_relay()
    return {"stopped": stopped}


@app.post("/relay/reset")
async def reset_relay() -> dict[str, Any]:
    """Clear relay history and start a new conversation."""
    orchestrator = get_orchestrator()
    orchestrator.reset()
    return {"conversation_id": orchestrator.conversation_id}


@app.get("/runs")
async def list_runs() -> list[dict[str, Any]]:
    """List all relay runs."""
    manager = get_stream_manager()
    return manager.list_runs()


@app.get("/debug/log", response_class=PlainTextResponse)
async def debug_log(conversation_id: Optional[str] = None) -> str:
    """Formatted dump of the debug event log."""
    return get_orchestrator().event_log.formatted_dump(conversation_id)


# =============================================================================
# Main Entry Point
# =============================================================================

def main() -> None:
    """Run the server."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)

    uvicorn.run(
        "agentrelay.server.api:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
