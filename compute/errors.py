"""
Error taxonomy for dispatch and settlement.

Every error carries a short `reason` code. Per-job failures are recoverable
and lead to a requeue; only settlement exhaustion ends a task as FAILED.
"""

from __future__ import annotations

from typing import Optional


class DispatchError(Exception):
    """Base class for all dispatch/settlement errors."""

    reason: str = "dispatch_error"
    recoverable: bool = True

    def __init__(self, message: str = "", *, task_id: Optional[int] = None) -> None:
        super().__init__(message or self.reason)
        self.task_id = task_id


class NoWorkersAvailable(DispatchError):
    reason = "no_workers_available"


class WorkerTimeout(DispatchError):
    reason = "worker_timeout"


class WorkerDisconnected(DispatchError):
    reason = "worker_disconnected"


class PredictorFailure(DispatchError):
    """A worker reported that its predictor failed for the job."""

    reason = "predictor_failure"


class TaskAlreadyInFlight(DispatchError):
    reason = "task_already_in_flight"


class SettlementTransient(DispatchError):
    reason = "settlement_transient"


class SettlementAlreadyDone(DispatchError):
    reason = "settlement_already_done"


class SettlementFailed(DispatchError):
    """Retry ceiling exhausted; the task is terminally FAILED."""

    reason = "settlement_failed"
    recoverable = False

    def __init__(self, message: str = "", *, task_id: Optional[int] = None, attempts: int = 0) -> None:
        super().__init__(message, task_id=task_id)
        self.attempts = attempts


class QueueClosed(Exception):
    """Raised by a blocked dequeue when the queue is shut down."""


class PredictorError(Exception):
    """Raised by a predictor when it cannot produce a prediction."""


class LedgerTransientError(Exception):
    """Recoverable ledger failure (network, node unavailable, 5xx)."""


class ProtocolError(ValueError):
    """Malformed or unknown message on the worker channel."""


class LedgerRequestError(Exception):
    """The ledger refused an intake request (unknown task, bad arguments)."""
