"""
Pending-request table: one live Assignment per task.

An assignment is opened right before a job is sent and discarded on exactly
one path (the dispatcher's `finally`). Replies are matched on task_id, worker
and request_id, so a late reply to an earlier attempt never resolves a newer
one.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from compute.errors import TaskAlreadyInFlight, WorkerDisconnected
from ethml.protocol import Reply


@dataclass
class Assignment:
    task_id: int
    worker_id: str
    request_id: str
    sent_at: float
    deadline: float
    future: "asyncio.Future[Reply]" = field(repr=False)

    @property
    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())


class PendingAssignments:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_task: Dict[int, Assignment] = {}

    def open(self, task_id: int, worker_id: str, reply_timeout: float) -> Assignment:
        """
        Record a new assignment. Must be called from the event loop.

        Raises:
            TaskAlreadyInFlight: if the task already has a live assignment.
        """
        loop = asyncio.get_running_loop()
        now = time.monotonic()
        with self._lock:
            if task_id in self._by_task:
                raise TaskAlreadyInFlight(
                    f"task {task_id} already assigned to {self._by_task[task_id].worker_id}",
                    task_id=task_id,
                )
            assignment = Assignment(
                task_id=int(task_id),
                worker_id=worker_id,
                request_id=uuid.uuid4().hex,
                sent_at=now,
                deadline=now + float(reply_timeout),
                future=loop.create_future(),
            )
            self._by_task[task_id] = assignment
        return assignment

    def resolve(self, worker_id: str, task_id: int, request_id: str, reply: Reply) -> bool:
        """Complete the matching assignment. False for a late or foreign reply."""
        with self._lock:
            assignment = self._by_task.get(task_id)
            if (
                assignment is None
                or assignment.worker_id != worker_id
                or assignment.request_id != request_id
            ):
                return False
        return _settle(assignment.future, result=reply)

    def cancel_worker(self, worker_id: str) -> List[int]:
        """Fail every assignment held by `worker_id` with WorkerDisconnected."""
        with self._lock:
            held = [a for a in self._by_task.values() if a.worker_id == worker_id]
        cancelled = []
        for assignment in held:
            error = WorkerDisconnected(
                f"worker {worker_id} disconnected", task_id=assignment.task_id
            )
            if _settle(assignment.future, error=error):
                cancelled.append(assignment.task_id)
        return cancelled

    def discard(self, assignment: Assignment) -> bool:
        with self._lock:
            if self._by_task.get(assignment.task_id) is not assignment:
                return False
            del self._by_task[assignment.task_id]
        if not assignment.future.done():
            assignment.future.cancel()
        return True

    def get(self, task_id: int) -> Optional[Assignment]:
        with self._lock:
            return self._by_task.get(task_id)

    def count_for(self, worker_id: str) -> int:
        with self._lock:
            return sum(1 for a in self._by_task.values() if a.worker_id == worker_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_task)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._by_task


def _settle(future: "asyncio.Future[Reply]", *, result: Optional[Reply] = None, error: Optional[BaseException] = None) -> bool:
    """Set a future's outcome from any thread; False if it was already done."""
    if future.done():
        return False
    loop = future.get_loop()

    def _apply() -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)  # type: ignore[arg-type]

    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        _apply()
    elif loop.is_closed():
        return False
    else:
        loop.call_soon_threadsafe(_apply)
    return True
