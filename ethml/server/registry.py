"""
Connected-worker registry.

One owned object guards every worker record behind a single lock. The
dispatcher reads `list_available()` on each dispatch; the worker channel
registers, refreshes and unregisters workers; the coordinator's eviction loop
calls `mark_dead_if_stale`.

Listeners are invoked outside the lock:
- removal listeners get the worker_id of each unregistered or evicted worker
- availability listeners fire when a worker registers or sends a status
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from compute.models import Worker, WorkerStatus

logger = logging.getLogger(__name__)

RemovalListener = Callable[[str], None]
AvailabilityListener = Callable[[], None]


class WorkerRegistry:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._workers: Dict[str, Worker] = {}
        self._next_seq = 0
        self._removal_listeners: List[RemovalListener] = []
        self._availability_listeners: List[AvailabilityListener] = []

    # ------------------------------------------------------------------ #
    # Listeners
    # ------------------------------------------------------------------ #

    def add_removal_listener(self, listener: RemovalListener) -> None:
        with self._lock:
            self._removal_listeners.append(listener)

    def add_availability_listener(self, listener: AvailabilityListener) -> None:
        with self._lock:
            self._availability_listeners.append(listener)

    # ------------------------------------------------------------------ #
    # Membership
    # ------------------------------------------------------------------ #

    def register(self, worker_id: str, status: Optional[WorkerStatus] = None) -> Worker:
        """
        Add a connected worker. Re-registering an id keeps its connection order.
        """
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                worker = Worker(
                    worker_id=worker_id,
                    connected_seq=self._next_seq,
                    status=status or WorkerStatus(),
                    last_seen=self._clock(),
                )
                self._next_seq += 1
                self._workers[worker_id] = worker
            else:
                worker.connected = True
                worker.last_seen = self._clock()
                if status is not None:
                    worker.status = status
            count = len(self._workers)
            listeners = list(self._availability_listeners)
        logger.info("worker_registered worker_id=%s workers=%s", worker_id, count)
        self._notify_available(listeners)
        return worker

    def unregister(self, worker_id: str) -> bool:
        with self._lock:
            worker = self._workers.pop(worker_id, None)
            listeners = list(self._removal_listeners)
        if worker is None:
            return False
        worker.connected = False
        logger.info("worker_unregistered worker_id=%s active_jobs=%s", worker_id, worker.active_jobs)
        self._notify_removed(listeners, [worker_id])
        return True

    def update_status(self, worker_id: str, status: WorkerStatus) -> bool:
        """Record a heartbeat. Returns False for an unknown worker."""
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                return False
            worker.status = status
            worker.last_seen = self._clock()
            listeners = list(self._availability_listeners)
        self._notify_available(listeners)
        return True

    def list_available(self) -> List[str]:
        """Connected worker ids in ascending connection order."""
        with self._lock:
            workers = [w for w in self._workers.values() if w.connected]
        workers.sort(key=lambda w: w.connected_seq)
        return [w.worker_id for w in workers]

    def mark_dead_if_stale(self, now: Optional[float], heartbeat_timeout: float) -> List[str]:
        """
        Evict every worker whose last heartbeat is older than `heartbeat_timeout`.

        Returns:
            The evicted worker ids.
        """
        if now is None:
            now = self._clock()
        with self._lock:
            stale = [
                worker_id
                for worker_id, worker in self._workers.items()
                if now - worker.last_seen > heartbeat_timeout
            ]
            for worker_id in stale:
                self._workers.pop(worker_id).connected = False
            listeners = list(self._removal_listeners)
        for worker_id in stale:
            logger.warning(
                "worker_evicted worker_id=%s heartbeat_timeout=%.1fs", worker_id, heartbeat_timeout
            )
        if stale:
            self._notify_removed(listeners, stale)
        return stale

    # ------------------------------------------------------------------ #
    # Assignment accounting
    # ------------------------------------------------------------------ #

    def increment_active(self, worker_id: str) -> int:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                return 0
            worker.active_jobs += 1
            return worker.active_jobs

    def decrement_active(self, worker_id: str) -> int:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                return 0
            worker.active_jobs = max(0, worker.active_jobs - 1)
            return worker.active_jobs

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    def get(self, worker_id: str) -> Optional[Worker]:
        with self._lock:
            return self._workers.get(worker_id)

    def snapshot(self) -> List[Dict]:
        with self._lock:
            workers = sorted(self._workers.values(), key=lambda w: w.connected_seq)
            return [w.to_dict() for w in workers]

    def __len__(self) -> int:
        with self._lock:
            return len(self._workers)

    # ------------------------------------------------------------------ #
    # Notifications
    # ------------------------------------------------------------------ #

    @staticmethod
    def _notify_removed(listeners: List[RemovalListener], worker_ids: List[str]) -> None:
        for worker_id in worker_ids:
            for listener in listeners:
                try:
                    listener(worker_id)
                except Exception:
                    logger.exception("removal listener failed worker_id=%s", worker_id)

    @staticmethod
    def _notify_available(listeners: List[AvailabilityListener]) -> None:
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("availability listener failed")
