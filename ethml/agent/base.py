"""
Worker agent: connects to the coordinator and runs dispatched jobs.

Connection lifecycle:
  1) open the WebSocket and read the `welcome` frame (connection id + heartbeat interval)
  2) send a `status` heartbeat every interval with cpu/mem load and active jobs
  3) for each `dispatch`, run the predictor and reply `result` or `error`
  4) on disconnect, wait `reconnect_delay` and connect again
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Optional, Set, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from compute.errors import PredictorError, ProtocolError
from compute.models import WorkerStatus
from compute.predictor import Predictor
from ethml.protocol import (
    DispatchMessage,
    ErrorMessage,
    Reply,
    ResultMessage,
    StatusMessage,
    WelcomeMessage,
    parse_message,
)

logger = logging.getLogger(__name__)


# ─────────────────────────── Load probe ───────────────────────────


def cpu_load_percent() -> float:
    """1-minute load average normalized by CPU count, as a percentage."""
    try:
        load1, _, _ = os.getloadavg()
    except (AttributeError, OSError):
        return 0.0
    cpus = os.cpu_count() or 1
    return max(0.0, min(100.0, 100.0 * load1 / cpus))


def mem_load_percent(meminfo: Path = Path("/proc/meminfo")) -> float:
    try:
        text = meminfo.read_text(encoding="utf-8")
    except OSError:
        return 0.0
    values = {}
    for line in text.splitlines():
        key, _, rest = line.partition(":")
        parts = rest.split()
        if parts:
            try:
                values[key.strip()] = float(parts[0])
            except ValueError:
                continue
    total = values.get("MemTotal", 0.0)
    available = values.get("MemAvailable", values.get("MemFree"))
    if total <= 0 or available is None:
        return 0.0
    return max(0.0, min(100.0, 100.0 * (1.0 - available / total)))


def sample_load() -> Tuple[float, float]:
    return cpu_load_percent(), mem_load_percent()


# ─────────────────────────── Agent ───────────────────────────


class WorkerAgent:
    """
    One worker process. `run()` keeps a connection to the coordinator open
    until `stop()`; `serve()` handles a single already-open connection.
    """

    def __init__(
        self,
        predictor: Predictor,
        *,
        server_url: str = "ws://127.0.0.1:3000/ws/worker",
        heartbeat_interval: Optional[float] = None,
        reconnect_delay: float = 5.0,  # seconds
        load_probe: Callable[[], Tuple[float, float]] = sample_load,
        connect: Callable[[str], Any] = websockets.connect,
    ):
        self.predictor = predictor
        self.server_url = server_url
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_delay = float(reconnect_delay)
        self.load_probe = load_probe
        self._connect = connect
        self.worker_id: Optional[str] = None
        self.active_jobs = 0
        self.jobs_handled = 0
        self.replies_dropped = 0
        self.should_exit = False
        self._send_lock = asyncio.Lock()

    # ─────────────────────────── Runner ───────────────────────────

    async def run(self) -> None:
        while not self.should_exit:
            try:
                async with self._connect(self.server_url) as connection:
                    logger.info("connected to coordinator url=%s", self.server_url)
                    await self.serve(connection)
            except (WebSocketException, OSError, ProtocolError, asyncio.TimeoutError) as exc:
                logger.warning("coordinator connection lost url=%s err=%s", self.server_url, exc)
            if self.should_exit:
                break
            logger.info("reconnecting in %.1fs", self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    def stop(self) -> None:
        self.should_exit = True

    async def serve(self, connection: Any) -> None:
        """Handle one open connection until it closes."""
        welcome = parse_message(await connection.recv())
        if not isinstance(welcome, WelcomeMessage):
            raise ProtocolError(f"expected welcome, got {welcome.type}")
        self.worker_id = welcome.worker_id
        interval = self.heartbeat_interval or welcome.heartbeat_interval
        logger.info("registered worker_id=%s heartbeat=%.1fs", self.worker_id, interval)

        jobs: Set[asyncio.Task] = set()
        heartbeat = asyncio.create_task(self._heartbeat_loop(connection, interval))
        try:
            async for raw in connection:
                try:
                    message = parse_message(raw)
                except ProtocolError as exc:
                    logger.warning("bad frame from coordinator: %s", exc)
                    continue
                if isinstance(message, DispatchMessage):
                    job = asyncio.create_task(self._run_dispatch(connection, message))
                    jobs.add(job)
                    job.add_done_callback(jobs.discard)
                else:
                    logger.debug("ignoring frame type=%s", message.type)
        finally:
            heartbeat.cancel()
            for job in list(jobs):
                job.cancel()
            await asyncio.gather(heartbeat, *jobs, return_exceptions=True)

    # ─────────────────────────── Heartbeat ───────────────────────────

    def status_message(self) -> StatusMessage:
        cpu_load, mem_load = self.load_probe()
        return StatusMessage.from_status(WorkerStatus.clamped(cpu_load, mem_load, self.active_jobs))

    async def _heartbeat_loop(self, connection: Any, interval: float) -> None:
        while True:
            await self._send(connection, self.status_message())
            await asyncio.sleep(interval)

    # ─────────────────────────── Jobs ───────────────────────────

    async def handle_dispatch(self, message: DispatchMessage) -> Optional[Reply]:
        """
        Run the predictor for one dispatch.

        Returns:
            The reply to send, or None when the coordinator's deadline has
            already passed and the reply would be discarded anyway.
        """
        started = time.monotonic()
        self.active_jobs += 1
        try:
            prediction = await self.predictor.predict(message.model_id, message.data_point)
            reply: Reply = ResultMessage(
                request_id=message.request_id,
                task_id=message.task_id,
                prediction=prediction.prediction,
                confidence=prediction.confidence,
            )
        except PredictorError as exc:
            logger.warning("predictor failed task_id=%s err=%s", message.task_id, exc)
            reply = ErrorMessage(request_id=message.request_id, task_id=message.task_id, error=str(exc))
        except Exception as exc:
            logger.exception("predictor crashed task_id=%s", message.task_id)
            reply = ErrorMessage(
                request_id=message.request_id,
                task_id=message.task_id,
                error=f"{type(exc).__name__}: {exc}",
            )
        finally:
            self.active_jobs = max(0, self.active_jobs - 1)
            self.jobs_handled += 1

        elapsed = time.monotonic() - started
        if elapsed > message.timeout_s:
            self.replies_dropped += 1
            logger.info(
                "reply dropped task_id=%s elapsed=%.2fs timeout=%.2fs",
                message.task_id,
                elapsed,
                message.timeout_s,
            )
            return None
        return reply

    async def _run_dispatch(self, connection: Any, message: DispatchMessage) -> None:
        logger.info("job received task_id=%s model_id=%s", message.task_id, message.model_id)
        reply = await self.handle_dispatch(message)
        if reply is None:
            return
        try:
            await self._send(connection, reply)
        except ConnectionClosed as exc:
            logger.warning("reply lost task_id=%s (connection closed: %s)", message.task_id, exc)

    async def _send(self, connection: Any, message: Any) -> None:
        async with self._send_lock:
            await connection.send(message.model_dump_json())
