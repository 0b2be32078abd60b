"""
FastAPI surface for the coordinator.

HTTP intake forwards to the coordinator; the worker channel is served on the
same app at `/ws/worker`. The coordinator is started and stopped by the app
lifespan.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, WebSocket
from pydantic import BaseModel, Field
from uvicorn import run as uvicorn_run

from compute.errors import LedgerRequestError, LedgerTransientError
from ethml import __version__
from ethml.server.config import HTTP_HOST, HTTP_PORT
from ethml.server.coordinator import Coordinator

logger = logging.getLogger(__name__)


# ================================================================== #
# REQUEST/RESPONSE MODELS
# ================================================================== #


class TaskRequest(BaseModel):
    """Create a prediction task on the ledger and dispatch it."""

    model_id: int = Field(ge=0)
    data_point: str
    tip: Union[str, float, int] = "0"


class JobRequest(BaseModel):
    """Dispatch a task that was already issued on the ledger."""

    task_id: int = Field(ge=0)
    model_id: int = Field(ge=0)
    data_point: str
    tip: Union[str, float, int] = "0"


class TaskCreatedResponse(BaseModel):
    task_id: int
    enqueued: bool = True


class HealthCheckResponse(BaseModel):
    status: str
    workers: int
    queued: int
    version: str
    timestamp: str


class WorkersResponse(BaseModel):
    count: int
    workers: List[Dict[str, Any]]


# ================================================================== #
# FASTAPI APPLICATION
# ================================================================== #


def create_app(coordinator: Optional[Coordinator] = None, *, manage_lifecycle: bool = True) -> FastAPI:
    """Create the coordinator app. A default Coordinator is built from config."""
    holder: Dict[str, Optional[Coordinator]] = {"coordinator": coordinator}

    def _coordinator() -> Coordinator:
        current = holder["coordinator"]
        if current is None:
            raise HTTPException(status_code=503, detail="Coordinator not initialized")
        return current

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if holder["coordinator"] is None:
            holder["coordinator"] = Coordinator()
        if manage_lifecycle:
            await holder["coordinator"].start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await holder["coordinator"].stop()

    app = FastAPI(
        title="EthML Coordinator",
        description="Dispatch paid prediction tasks to compute workers and settle results",
        version=__version__,
        lifespan=lifespan,
    )

    # ================================================================ #
    # ENDPOINTS
    # ================================================================ #

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check() -> HealthCheckResponse:
        current = _coordinator()
        return HealthCheckResponse(
            status="healthy",
            workers=len(current.registry),
            queued=current.queue.pending_count(),
            version=__version__,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.post("/api/tasks", response_model=TaskCreatedResponse)
    async def create_task(request: TaskRequest) -> TaskCreatedResponse:
        """Issue the task on the ledger (`requestPrediction`), then enqueue it."""
        current = _coordinator()
        try:
            task_id = await current.request_task(request.model_id, request.data_point, request.tip)
        except LedgerRequestError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except LedgerTransientError as e:
            logger.error("ledger unavailable for task intake: %s", e)
            raise HTTPException(status_code=502, detail=f"Ledger unavailable: {e}")
        return TaskCreatedResponse(task_id=task_id)

    @app.post("/api/jobs", response_model=TaskCreatedResponse)
    async def create_job(request: JobRequest) -> TaskCreatedResponse:
        current = _coordinator()
        enqueued = current.create_job(request.task_id, request.model_id, request.data_point, request.tip)
        return TaskCreatedResponse(task_id=request.task_id, enqueued=enqueued)

    @app.get("/api/tasks/{task_id}")
    async def get_task(task_id: int) -> Dict[str, Any]:
        current = _coordinator()
        status = await current.get_task_status(task_id)
        if status["ledger"] is None and status["dispatch"] is None:
            raise HTTPException(status_code=404, detail=status["ledger_error"] or f"Unknown task {task_id}")
        return status

    @app.get("/api/workers", response_model=WorkersResponse)
    async def list_workers() -> WorkersResponse:
        workers = _coordinator().registry.snapshot()
        return WorkersResponse(count=len(workers), workers=workers)

    @app.get("/stats")
    async def stats() -> Dict[str, Any]:
        return _coordinator().stats_snapshot()

    @app.websocket("/ws/worker")
    async def worker_socket(websocket: WebSocket) -> None:
        current = holder["coordinator"]
        if current is None:
            await websocket.close(code=1013)
            return
        await current.channel.handle(websocket)

    return app


# ================================================================== #
# MAIN
# ================================================================== #


def run_api(coordinator: Optional[Coordinator] = None, host: str = HTTP_HOST, port: int = HTTP_PORT) -> None:
    """
    Run the coordinator API under uvicorn.

    Args:
        coordinator: Pre-built coordinator; one is built from config if None
        host: Host to bind to (default 0.0.0.0)
        port: Port to bind to (default 3000)
    """
    app = create_app(coordinator)
    logger.info("starting coordinator API on %s:%s", host, port)
    uvicorn_run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    run_api()
