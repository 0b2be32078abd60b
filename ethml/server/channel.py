"""
Worker channel over WebSocket.

Each accepted socket gets a fresh connection id (the worker_id), a `welcome`
frame, and a registry entry. Incoming frames are routed:

- `status` -> WorkerRegistry.update_status
- `result` / `error` -> Dispatcher.deliver_reply

The socket closing (either side) unregisters the worker, which cancels its
assignments through the registry's removal listeners. Evicted workers get
their socket closed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict

from fastapi import WebSocket, WebSocketDisconnect

from compute.errors import ProtocolError, WorkerDisconnected
from ethml.protocol import (
    DispatchMessage,
    ErrorMessage,
    ResultMessage,
    StatusMessage,
    WelcomeMessage,
    dump_message,
    parse_message,
)
from ethml.server.dispatch import Dispatcher
from ethml.server.registry import WorkerRegistry

logger = logging.getLogger(__name__)

# Going Away: the server dropped the worker (stale heartbeat or shutdown).
CLOSE_EVICTED = 1001


@dataclass
class _Connection:
    websocket: WebSocket
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class WorkerChannel:
    def __init__(
        self,
        *,
        registry: WorkerRegistry,
        dispatcher: Dispatcher,
        heartbeat_interval: float = 5.0,  # seconds
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.heartbeat_interval = float(heartbeat_interval)
        self._connections: Dict[str, _Connection] = {}
        self._closers: set = set()
        registry.add_removal_listener(self._on_worker_removed)
        dispatcher.attach_transport(self)

    async def handle(self, websocket: WebSocket) -> None:
        """Serve one worker connection until it closes."""
        await websocket.accept()
        worker_id = uuid.uuid4().hex
        connection = _Connection(websocket=websocket)
        self._connections[worker_id] = connection
        client = getattr(websocket, "client", None)
        logger.info("worker_connected worker_id=%s client=%s", worker_id, client)
        try:
            welcome = WelcomeMessage(worker_id=worker_id, heartbeat_interval=self.heartbeat_interval)
            async with connection.send_lock:
                await websocket.send_json(dump_message(welcome))
            self.registry.register(worker_id)
            while True:
                raw = await websocket.receive_text()
                self._on_frame(worker_id, raw)
        except WebSocketDisconnect as exc:
            logger.info("worker_disconnected worker_id=%s code=%s", worker_id, exc.code)
        except RuntimeError as exc:
            # Raised by receive after the server side closed the socket.
            logger.info("worker_socket_closed worker_id=%s err=%s", worker_id, exc)
        finally:
            if self._connections.get(worker_id) is connection:
                del self._connections[worker_id]
            self.registry.unregister(worker_id)

    def _on_frame(self, worker_id: str, raw: str) -> None:
        try:
            message = parse_message(raw)
        except ProtocolError as exc:
            logger.warning("bad_frame worker_id=%s err=%s", worker_id, exc)
            return
        if isinstance(message, StatusMessage):
            if not self.registry.update_status(worker_id, message.to_status()):
                logger.debug("status from unknown worker_id=%s", worker_id)
        elif isinstance(message, (ResultMessage, ErrorMessage)):
            self.dispatcher.deliver_reply(worker_id, message)
        else:
            logger.warning("unexpected_frame worker_id=%s type=%s", worker_id, message.type)

    async def send(self, worker_id: str, message: DispatchMessage) -> None:
        connection = self._connections.get(worker_id)
        if connection is None:
            raise WorkerDisconnected(f"worker {worker_id} is not connected", task_id=message.task_id)
        try:
            async with connection.send_lock:
                await connection.websocket.send_json(dump_message(message))
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            raise WorkerDisconnected(f"send to {worker_id} failed: {exc}", task_id=message.task_id) from exc

    def _on_worker_removed(self, worker_id: str) -> None:
        connection = self._connections.pop(worker_id, None)
        if connection is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._close(worker_id, connection))
        self._closers.add(task)
        task.add_done_callback(self._closers.discard)

    async def _close(self, worker_id: str, connection: _Connection) -> None:
        try:
            await connection.websocket.close(code=CLOSE_EVICTED)
        except (RuntimeError, OSError) as exc:
            logger.debug("close failed worker_id=%s err=%s", worker_id, exc)

    async def close_all(self) -> None:
        for worker_id in list(self._connections):
            connection = self._connections.pop(worker_id)
            await self._close(worker_id, connection)

    def is_connected(self, worker_id: str) -> bool:
        return worker_id in self._connections
