"""
Pytest configuration and shared fixtures for all tests.
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import pytest

# Ensure the repo root is on `sys.path` so top-level imports work.
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

# Tests run against the testing profile and never touch a real ledger.
os.environ.setdefault("ETHML_ENV", "testing")
os.environ.setdefault("ETHML_USE_MOCK_LEDGER", "true")
os.environ.setdefault("ETHML_EVENT_LOG_ENABLED", "false")

from compute.errors import WorkerDisconnected
from compute.models import Job, Task
from compute.storage import TaskQueue, TaskStore
from ethml.protocol import DispatchMessage, Reply
from ethml.server.dispatch import Dispatcher
from ethml.server.event_log import DispatchEventLog
from ethml.server.mocks import InMemoryLedger
from ethml.server.registry import WorkerRegistry
from ethml.server.settlement import SettlementSubmitter


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """
    Records dispatch frames instead of writing to a socket.

    `responder(worker_id, message)` may return a reply, which is delivered to
    the dispatcher on the next loop iteration like a real channel would.
    """

    def __init__(self, dispatcher: Dispatcher, responder: Optional[Callable] = None) -> None:
        self.dispatcher = dispatcher
        self.responder = responder
        self.sent: List[Tuple[str, DispatchMessage]] = []
        self.unreachable: set = set()

    async def send(self, worker_id: str, message: DispatchMessage) -> None:
        if worker_id in self.unreachable:
            raise WorkerDisconnected(f"{worker_id} unreachable", task_id=message.task_id)
        self.sent.append((worker_id, message))
        if self.responder is not None:
            reply: Optional[Reply] = self.responder(worker_id, message)
            if reply is not None:
                asyncio.get_running_loop().call_soon(self.dispatcher.deliver_reply, worker_id, reply)


async def _no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


class DispatchHarness:
    """Dispatcher wired to real SQLite storage, an in-memory ledger and a fake transport."""

    def __init__(
        self,
        tmp_path: Path,
        *,
        reply_timeout: float = 1.0,
        heartbeat_timeout: float = 10.0,
        responder: Optional[Callable] = None,
        max_attempts: int = 3,
    ) -> None:
        self.clock = FakeClock()
        self.registry = WorkerRegistry(clock=self.clock)
        self.queue = TaskQueue(str(tmp_path / "queue.db"))
        self.store = TaskStore(str(tmp_path / "tasks.db"))
        self.ledger = InMemoryLedger()
        self.event_log = DispatchEventLog(path=str(tmp_path / "events.jsonl"), enabled=True)
        self.sleeps: List[float] = []

        async def _record_sleep(seconds: float) -> None:
            self.sleeps.append(seconds)
            await _no_sleep(seconds)

        self.submitter = SettlementSubmitter(
            ledger=self.ledger,
            store=self.store,
            max_attempts=max_attempts,
            backoff_base=1.0,
            backoff_max=30.0,
            call_timeout=1.0,
            event_log=self.event_log,
            sleep=_record_sleep,
        )
        self.dispatcher = Dispatcher(
            registry=self.registry,
            queue=self.queue,
            store=self.store,
            submitter=self.submitter,
            reply_timeout=reply_timeout,
            heartbeat_timeout=heartbeat_timeout,
            event_log=self.event_log,
        )
        self.transport = FakeTransport(self.dispatcher, responder)
        self.dispatcher.attach_transport(self.transport)

    def add_task(self, task_id: int, model_id: int = 1, data_point: str = "1,2,3") -> Job:
        self.store.create(Task(task_id=task_id, model_id=model_id, data_point=data_point))
        job = Job(task_id=task_id, model_id=model_id, data_point=data_point)
        self.queue.enqueue(job)
        return job

    def claim(self) -> Job:
        job = self.queue.try_dequeue()
        assert job is not None, "queue is empty"
        return job

    @staticmethod
    async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)


@pytest.fixture
def temp_queue_db(tmp_path):
    """Temporary SQLite path for TaskQueue tests."""
    return str(tmp_path / "queue.db")


@pytest.fixture
def temp_task_db(tmp_path):
    """Temporary SQLite path for TaskStore tests."""
    return str(tmp_path / "tasks.db")


@pytest.fixture
def queue(temp_queue_db):
    return TaskQueue(db_path=temp_queue_db)


@pytest.fixture
def store(temp_task_db):
    return TaskStore(db_path=temp_task_db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def harness_factory(tmp_path):
    """
    Build a DispatchHarness.

    Usage:
        def test_dispatch(harness_factory):
            h = harness_factory(reply_timeout=0.1)
    """

    def _build(**kwargs) -> DispatchHarness:
        return DispatchHarness(tmp_path, **kwargs)

    return _build
