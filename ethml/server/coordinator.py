"""
Coordinator: owns and wires the dispatch core.

    intake -> TaskStore + TaskQueue -> Dispatcher -> WorkerChannel -> agent
    agent reply -> Dispatcher -> SettlementSubmitter -> ledger

`start()` recovers in-flight jobs from a previous run, then runs the
dispatcher drain loop and the stale-worker eviction loop as background tasks.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from compute.errors import LedgerRequestError, LedgerTransientError
from compute.models import Job, Task
from compute.storage import TaskQueue, TaskStore
from ethml.server import config
from ethml.server.channel import WorkerChannel
from ethml.server.dispatch import Dispatcher, DispatchStats
from ethml.server.event_log import DispatchEventLog
from ethml.server.mocks import InMemoryLedger
from ethml.server.registry import WorkerRegistry
from ethml.server.settlement import HttpLedgerClient, LedgerClient, SettlementSubmitter

logger = logging.getLogger(__name__)


def build_ledger_client() -> LedgerClient:
    """Pick the ledger collaborator from configuration."""
    if config.USE_MOCK_LEDGER:
        logger.info("using in-memory ledger (ETHML_USE_MOCK_LEDGER)")
        return InMemoryLedger()
    if not config.LEDGER_ENDPOINT:
        raise RuntimeError("ETHML_LEDGER_ENDPOINT is required when the mock ledger is disabled")
    return HttpLedgerClient(
        config.LEDGER_ENDPOINT,
        contract_address=config.CONTRACT_ADDRESS,
        account=config.LEDGER_ACCOUNT,
        timeout=config.LEDGER_CALL_TIMEOUT_SECONDS,
    )


class Coordinator:
    def __init__(
        self,
        *,
        ledger: Optional[LedgerClient] = None,
        queue: Optional[TaskQueue] = None,
        store: Optional[TaskStore] = None,
        registry: Optional[WorkerRegistry] = None,
        event_log: Optional[DispatchEventLog] = None,
        reply_timeout: float = config.REPLY_TIMEOUT_SECONDS,
        heartbeat_interval: float = config.HEARTBEAT_INTERVAL_SECONDS,
        heartbeat_timeout: float = config.HEARTBEAT_TIMEOUT_SECONDS,
        concurrency: int = config.DISPATCH_CONCURRENCY,
        ledger_max_attempts: int = config.LEDGER_MAX_ATTEMPTS,
        ledger_backoff_base: float = config.LEDGER_BACKOFF_BASE_SECONDS,
        ledger_backoff_max: float = config.LEDGER_BACKOFF_MAX_SECONDS,
        ledger_call_timeout: float = config.LEDGER_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self.ledger = ledger if ledger is not None else build_ledger_client()
        self.queue = queue or TaskQueue(config.QUEUE_DB_PATH)
        self.store = store or TaskStore(config.TASK_DB_PATH)
        self.registry = registry or WorkerRegistry()
        self.event_log = event_log or DispatchEventLog(
            path=config.EVENT_LOG_PATH, enabled=config.EVENT_LOG_ENABLED
        )
        self.heartbeat_interval = float(heartbeat_interval)
        self.heartbeat_timeout = float(heartbeat_timeout)
        self.stats = DispatchStats()
        self.submitter = SettlementSubmitter(
            ledger=self.ledger,
            store=self.store,
            max_attempts=ledger_max_attempts,
            backoff_base=ledger_backoff_base,
            backoff_max=ledger_backoff_max,
            call_timeout=ledger_call_timeout,
            event_log=self.event_log,
        )
        self.dispatcher = Dispatcher(
            registry=self.registry,
            queue=self.queue,
            store=self.store,
            submitter=self.submitter,
            reply_timeout=reply_timeout,
            heartbeat_timeout=heartbeat_timeout,
            concurrency=concurrency,
            event_log=self.event_log,
            stats=self.stats,
        )
        self.channel = WorkerChannel(
            registry=self.registry,
            dispatcher=self.dispatcher,
            heartbeat_interval=heartbeat_interval,
        )
        self.registry.add_removal_listener(self._on_worker_removed)
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        recovered = self.queue.recover()
        for task_id in self.queue.queued_task_ids():
            self.store.mark_pending(task_id, None)
        logger.info(
            "coordinator starting recovered=%s queued=%s heartbeat_timeout=%.1fs",
            recovered,
            self.queue.pending_count(),
            self.heartbeat_timeout,
        )
        self._tasks = [
            asyncio.create_task(self.dispatcher.run(), name="dispatcher"),
            asyncio.create_task(self._eviction_loop(), name="eviction"),
        ]

    async def stop(self) -> None:
        self.queue.close()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.dispatcher.shutdown()
        await self.channel.close_all()
        disconnect = getattr(self.ledger, "disconnect", None)
        if disconnect is not None:
            await disconnect()
        logger.info("coordinator stopped")

    async def _eviction_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                self.evict_stale()
            except Exception:
                logger.exception("eviction sweep failed")

    def evict_stale(self, now: Optional[float] = None) -> list:
        evicted = self.registry.mark_dead_if_stale(now, self.heartbeat_timeout)
        for worker_id in evicted:
            self.event_log.write("worker_evicted", {"worker_id": worker_id})
        return evicted

    def _on_worker_removed(self, worker_id: str) -> None:
        self.event_log.write("worker_removed", {"worker_id": worker_id})

    # ------------------------------------------------------------------ #
    # Intake
    # ------------------------------------------------------------------ #

    def create_job(self, task_id: int, model_id: int, data_point: str, tip: Any = "0") -> bool:
        """
        Accept a ledger task for dispatch.

        Returns:
            True if a new job was enqueued; False if the task was already
            known (queued, in flight or finished).
        """
        task = Task(task_id=int(task_id), model_id=int(model_id), data_point=str(data_point), tip=str(tip))
        created = self.store.create(task)
        if not created:
            existing = self.store.get(task.task_id)
            if existing is not None and existing.status.is_terminal:
                logger.info("job_rejected task_id=%s status=%s", task_id, existing.status.value)
                return False
        enqueued = self.queue.enqueue(Job(task_id=task.task_id, model_id=task.model_id, data_point=task.data_point))
        if enqueued:
            self.event_log.write(
                "job_enqueued",
                {"task_id": task.task_id, "model_id": task.model_id, "tip": task.tip},
            )
        return enqueued

    async def request_task(self, model_id: int, data_point: str, tip: Any = "0") -> int:
        """Create the task on the ledger, then enqueue it."""
        task_id = await self.ledger.request_prediction(int(model_id), str(data_point), str(tip))
        self.create_job(task_id, model_id, data_point, tip)
        return task_id

    async def get_task_status(self, task_id: int) -> Dict[str, Any]:
        """Ledger view of a task merged with the local dispatch view."""
        local = self.store.get(task_id)
        ledger_view: Optional[Dict[str, Any]] = None
        ledger_error: Optional[str] = None
        try:
            ledger_view = await self.ledger.get_task(task_id)
        except (LedgerRequestError, LedgerTransientError) as exc:
            ledger_error = str(exc)
        settlement = self.store.get_settlement(task_id)
        return {
            "task_id": int(task_id),
            "ledger": ledger_view,
            "ledger_error": ledger_error,
            "dispatch": local.to_dict() if local is not None else None,
            "settlement": {
                "submitted": settlement.submitted,
                "outcome": settlement.outcome,
                "attempts": settlement.attempts,
            }
            if settlement is not None
            else None,
        }

    def stats_snapshot(self) -> Dict[str, Any]:
        return {
            **self.stats.snapshot(),
            "queue": {"queued": self.queue.pending_count(), "inflight": self.queue.inflight_count()},
            "workers": len(self.registry),
            "assignments": self.dispatcher.in_flight,
        }
