"""
Shared dataclasses for the dispatch core.

These models intentionally stay free of transport and storage details so the
server, the worker agent and the storage layer can all share them.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class TaskStatus(str, Enum):
    """Lifecycle of a ledger task as seen by the dispatch core."""

    PENDING = "pending"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass(frozen=True)
class Job:
    """
    Queued unit of work derived 1:1 from a Task.

    `seq` and `attempts` are queue bookkeeping; they do not take part in
    equality so a requeued job still compares equal to the original.
    """

    task_id: int
    model_id: int
    data_point: str
    seq: Optional[int] = field(default=None, compare=False)
    attempts: int = field(default=0, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "model_id": self.model_id,
            "data_point": self.data_point,
        }


@dataclass
class Task:
    """
    A paid prediction request accepted by the intake layer.

    `reason` is set when the task reaches FAILED and is the code surfaced to
    the intake layer. `last_error` keeps the most recent recoverable failure.
    """

    task_id: int
    model_id: int
    data_point: str
    tip: str = "0"
    status: TaskStatus = TaskStatus.PENDING
    reason: Optional[str] = None
    last_error: Optional[str] = None
    worker_id: Optional[str] = None
    attempts: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_job(self) -> Job:
        return Job(task_id=self.task_id, model_id=self.model_id, data_point=self.data_point)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


def _clamp_percent(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return max(0.0, min(100.0, number))


@dataclass(frozen=True)
class WorkerStatus:
    """Self-reported worker load, as sent in each heartbeat."""

    cpu_load: float = 0.0
    mem_load: float = 0.0
    active_jobs: int = 0

    @classmethod
    def clamped(cls, cpu_load: Any, mem_load: Any, active_jobs: Any) -> "WorkerStatus":
        try:
            jobs = max(0, int(active_jobs))
        except (TypeError, ValueError):
            jobs = 0
        return cls(cpu_load=_clamp_percent(cpu_load), mem_load=_clamp_percent(mem_load), active_jobs=jobs)


@dataclass
class Worker:
    """
    Registry record for one connected worker.

    `active_jobs` is the server-side count of live assignments; the worker's
    own view lives in `status.active_jobs`.
    """

    worker_id: str
    connected_seq: int
    status: WorkerStatus = field(default_factory=WorkerStatus)
    last_seen: float = field(default_factory=time.monotonic)
    connected: bool = True
    active_jobs: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "connected": self.connected,
            "connected_seq": self.connected_seq,
            "active_jobs": self.active_jobs,
            "last_seen": self.last_seen,
            "status": asdict(self.status),
        }


@dataclass(frozen=True)
class Prediction:
    """Result returned by a predictor for one job."""

    prediction: Any
    confidence: float = 0.0


@dataclass
class SettlementRecord:
    """
    Guard against double submission to the ledger, keyed by task_id.

    Written once with `submitted=False` before the first ledger call and
    never changed after `submitted` flips to True.
    """

    task_id: int
    prediction: Any
    confidence: float = 0.0
    submitted: bool = False
    outcome: Optional[str] = None
    attempts: int = 0
    submitted_at: Optional[float] = None
