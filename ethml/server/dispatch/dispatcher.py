"""
Job dispatcher.

Drains the TaskQueue and routes each job to exactly one connected worker:

1. read the available workers (connection order) from the registry
2. pick `workers[task_id % len(workers)]`
3. open the Assignment, count it against the worker, mark the task dispatched
4. send the job and wait for a reply, a disconnect or the reply deadline
5. hand a result to the SettlementSubmitter; requeue on any per-job failure

Each dequeued job runs in its own asyncio task; the drain loop is bounded by a
semaphore and waits for a worker to be available before the next dequeue, so
an empty pool never busy-loops.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Protocol, Set

from compute.errors import (
    DispatchError,
    NoWorkersAvailable,
    PredictorFailure,
    QueueClosed,
    SettlementFailed,
    TaskAlreadyInFlight,
    WorkerDisconnected,
    WorkerTimeout,
)
from compute.models import Job
from compute.storage import TaskQueue, TaskStore
from ethml.protocol import DispatchMessage, ErrorMessage, Reply
from ethml.server.dispatch.pending import PendingAssignments
from ethml.server.dispatch.stats import DispatchStats
from ethml.server.event_log import DispatchEventLog
from ethml.server.registry import WorkerRegistry
from ethml.server.settlement.submitter import SettlementSubmitter

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_REQUEUED = "requeued"
OUTCOME_SKIPPED = "skipped"


class WorkerTransport(Protocol):
    """Delivers a dispatch frame to one worker; raises WorkerDisconnected."""

    async def send(self, worker_id: str, message: DispatchMessage) -> None:
        ...


class Dispatcher:
    def __init__(
        self,
        *,
        registry: WorkerRegistry,
        queue: TaskQueue,
        store: TaskStore,
        submitter: SettlementSubmitter,
        transport: Optional[WorkerTransport] = None,
        reply_timeout: float = 60.0,  # seconds
        heartbeat_timeout: float = 20.0,  # seconds
        concurrency: int = 64,
        event_log: Optional[DispatchEventLog] = None,
        stats: Optional[DispatchStats] = None,
    ) -> None:
        if reply_timeout <= 0:
            raise ValueError("reply_timeout must be > 0")
        self.registry = registry
        self.queue = queue
        self.store = store
        self.submitter = submitter
        self.transport = transport
        self.reply_timeout = float(reply_timeout)
        self.heartbeat_timeout = float(heartbeat_timeout)
        self.concurrency = max(1, int(concurrency))
        self.pending = PendingAssignments()
        self.stats = stats or DispatchStats()
        self._event_log = event_log
        self._jobs: Set[asyncio.Task] = set()
        self._workers_ready: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        registry.add_removal_listener(self.cancel_worker_assignments)
        registry.add_availability_listener(self._on_worker_available)

    def attach_transport(self, transport: WorkerTransport) -> None:
        self.transport = transport

    @staticmethod
    def select_worker(task_id: int, workers: List[str]) -> str:
        """Deterministic choice: `workers[task_id mod len(workers)]`."""
        if not workers:
            raise NoWorkersAvailable(task_id=task_id)
        return workers[int(task_id) % len(workers)]

    def _event(self, event: str, payload: Dict[str, Any]) -> None:
        if self._event_log is not None:
            self._event_log.write(event, payload)

    # ------------------------------------------------------------------ #
    # Drain loop
    # ------------------------------------------------------------------ #

    async def run(self) -> None:
        """Dequeue and dispatch until the queue is closed or the task is cancelled."""
        self._bind_loop()
        slots = asyncio.Semaphore(self.concurrency)
        logger.info(
            "dispatcher started reply_timeout=%.1fs concurrency=%s", self.reply_timeout, self.concurrency
        )
        try:
            while True:
                await self.wait_for_workers()
                await slots.acquire()
                try:
                    job = await self.queue.dequeue()
                except BaseException:
                    slots.release()
                    raise
                task = asyncio.create_task(self._run_job(job, slots), name=f"dispatch-{job.task_id}")
                self._jobs.add(task)
                task.add_done_callback(self._jobs.discard)
        except QueueClosed:
            logger.info("dispatcher stopped: queue closed")

    async def wait_for_workers(self) -> None:
        """Block until the registry lists at least one worker."""
        workers_ready = self._bind_loop()
        while True:
            workers_ready.clear()
            if self.registry.list_available():
                return
            logger.debug("dispatcher waiting for workers queued=%s", self.queue.pending_count())
            await workers_ready.wait()

    async def _run_job(self, job: Job, slots: asyncio.Semaphore) -> None:
        try:
            await self.dispatch_job(job)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("dispatch crashed task_id=%s; requeueing", job.task_id)
            self.queue.requeue(job)
        finally:
            slots.release()

    async def shutdown(self) -> None:
        """Cancel in-flight dispatches; their jobs stay in flight for `recover()`."""
        jobs = list(self._jobs)
        for task in jobs:
            task.cancel()
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)

    # ------------------------------------------------------------------ #
    # One dispatch attempt
    # ------------------------------------------------------------------ #

    async def dispatch_job(self, job: Job) -> str:
        """
        Run one dispatch attempt for a dequeued job.

        Returns:
            "completed", "failed" (settlement exhausted), "requeued" or
            "skipped" (the task already has a live assignment).
        """
        workers = self.registry.list_available()
        if not workers:
            self._requeue(job, NoWorkersAvailable(task_id=job.task_id))
            return OUTCOME_REQUEUED

        worker_id = self.select_worker(job.task_id, workers)
        try:
            assignment = self.pending.open(job.task_id, worker_id, self.reply_timeout)
        except TaskAlreadyInFlight as exc:
            logger.warning("dispatch_skipped task_id=%s reason=%s", job.task_id, exc.reason)
            return OUTCOME_SKIPPED

        self.registry.increment_active(worker_id)
        self.store.mark_dispatched(job.task_id, worker_id)
        self.stats.record("dispatched")
        logger.info(
            "dispatch_sent task_id=%s worker_id=%s index=%s/%s attempt=%s",
            job.task_id,
            worker_id,
            workers.index(worker_id),
            len(workers),
            job.attempts,
        )
        self._event(
            "dispatch_sent",
            {
                "task_id": job.task_id,
                "worker_id": worker_id,
                "request_id": assignment.request_id,
                "available": workers,
                "index": workers.index(worker_id),
                "attempt": job.attempts,
            },
        )

        error: Optional[DispatchError] = None
        reply: Optional[Reply] = None
        try:
            try:
                await self._send(worker_id, job, assignment.request_id)
                reply = await asyncio.wait_for(assignment.future, timeout=assignment.remaining)
            except asyncio.TimeoutError:
                error = WorkerTimeout(
                    f"no reply from {worker_id} within {self.reply_timeout:.1f}s", task_id=job.task_id
                )
            except DispatchError as exc:
                error = exc
            if isinstance(reply, ErrorMessage):
                error = PredictorFailure(reply.error, task_id=job.task_id)
            elif reply is None and error is None:
                error = PredictorFailure("worker sent an empty reply", task_id=job.task_id)
        finally:
            self.pending.discard(assignment)
            self.registry.decrement_active(worker_id)

        if error is not None:
            self._requeue(job, error, worker_id=worker_id)
            if isinstance(error, WorkerTimeout):
                self.registry.mark_dead_if_stale(None, self.heartbeat_timeout)
            return OUTCOME_REQUEUED

        latency = time.monotonic() - assignment.sent_at
        self.stats.record_latency(latency)
        self._event(
            "dispatch_reply",
            {"task_id": job.task_id, "worker_id": worker_id, "latency_s": round(latency, 4)},
        )
        return await self._settle(job, reply)

    async def _send(self, worker_id: str, job: Job, request_id: str) -> None:
        if self.transport is None:
            raise WorkerDisconnected("no worker transport attached", task_id=job.task_id)
        message = DispatchMessage.from_job(job, request_id=request_id, timeout_s=self.reply_timeout)
        try:
            await self.transport.send(worker_id, message)
        except DispatchError:
            raise
        except Exception as exc:
            raise WorkerDisconnected(f"send to {worker_id} failed: {exc}", task_id=job.task_id) from exc

    async def _settle(self, job: Job, reply: Reply) -> str:
        prediction = reply.to_prediction()  # type: ignore[union-attr]
        try:
            await self.submitter.submit(job.task_id, prediction.prediction, prediction.confidence)
        except SettlementFailed as exc:
            self.store.mark_failed(job.task_id, exc.reason)
            self.queue.complete(job)
            self.stats.record("failed")
            logger.error("task_failed task_id=%s reason=%s", job.task_id, exc.reason)
            return OUTCOME_FAILED
        self.store.mark_completed(job.task_id)
        self.queue.complete(job)
        self.stats.record("completed")
        logger.info(
            "task_completed task_id=%s prediction=%s confidence=%.3f",
            job.task_id,
            prediction.prediction,
            prediction.confidence,
        )
        return OUTCOME_COMPLETED

    def _requeue(self, job: Job, error: DispatchError, *, worker_id: Optional[str] = None) -> None:
        requeued = self.queue.requeue(job)
        self.stats.record_requeue(error.reason)
        self.store.mark_pending(job.task_id, error.reason)
        logger.warning(
            "dispatch_requeued task_id=%s worker_id=%s reason=%s err=%s requeued=%s",
            job.task_id,
            worker_id,
            error.reason,
            error,
            requeued,
        )
        self._event(
            "dispatch_requeued",
            {
                "task_id": job.task_id,
                "worker_id": worker_id,
                "reason": error.reason,
                "error": str(error),
            },
        )

    # ------------------------------------------------------------------ #
    # Channel callbacks
    # ------------------------------------------------------------------ #

    def deliver_reply(self, worker_id: str, message: Reply) -> bool:
        """Route a worker's reply to its assignment. False for a late reply."""
        matched = self.pending.resolve(worker_id, message.task_id, message.request_id, message)
        if not matched:
            self.stats.record("late_replies")
            logger.info(
                "late_reply_ignored task_id=%s worker_id=%s request_id=%s",
                message.task_id,
                worker_id,
                message.request_id,
            )
        return matched

    def cancel_worker_assignments(self, worker_id: str) -> List[int]:
        cancelled = self.pending.cancel_worker(worker_id)
        if cancelled:
            logger.warning("assignments_cancelled worker_id=%s task_ids=%s", worker_id, cancelled)
            self._event("assignments_cancelled", {"worker_id": worker_id, "task_ids": cancelled})
        return cancelled

    # ------------------------------------------------------------------ #
    # Worker availability wakeups
    # ------------------------------------------------------------------ #

    def _bind_loop(self) -> asyncio.Event:
        loop = asyncio.get_running_loop()
        if self._workers_ready is None or self._loop is not loop:
            self._loop = loop
            self._workers_ready = asyncio.Event()
        return self._workers_ready

    def _on_worker_available(self) -> None:
        event, loop = self._workers_ready, self._loop
        if event is None or loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)

    @property
    def in_flight(self) -> int:
        return len(self.pending)
