"""
Exactly-once result submission to the ledger.

The SettlementRecord in the task store is the idempotency guard: it is
created before the first ledger call and flipped to submitted on success (or
on an already-settled rejection). Calls for the same task are serialized by a
per-task lock, so concurrent submissions make one ledger call.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from compute.errors import LedgerRequestError, LedgerTransientError, SettlementFailed
from compute.storage import TaskStore
from ethml.server.event_log import DispatchEventLog
from ethml.server.settlement.ledger_client import LedgerClient, LedgerResult

logger = logging.getLogger(__name__)

OUTCOME_SUBMITTED = "submitted"
OUTCOME_ALREADY_SETTLED = "already_settled"


class SettlementSubmitter:
    def __init__(
        self,
        *,
        ledger: LedgerClient,
        store: TaskStore,
        max_attempts: int = 3,
        backoff_base: float = 1.0,  # seconds
        backoff_max: float = 30.0,  # seconds
        call_timeout: float = 30.0,  # seconds
        event_log: Optional[DispatchEventLog] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.ledger = ledger
        self.store = store
        self.max_attempts = int(max_attempts)
        self.backoff_base = float(backoff_base)
        self.backoff_max = float(backoff_max)
        self.call_timeout = float(call_timeout)
        self._event_log = event_log
        self._sleep = sleep
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    def backoff_for(self, attempt: int) -> float:
        """Delay after failed attempt `attempt` (1-based)."""
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))

    def _acquire_slot(self, task_id: int) -> asyncio.Lock:
        lock = self._locks.setdefault(task_id, asyncio.Lock())
        self._lock_users[task_id] = self._lock_users.get(task_id, 0) + 1
        return lock

    def _release_slot(self, task_id: int) -> None:
        users = self._lock_users.get(task_id, 1) - 1
        if users <= 0:
            self._lock_users.pop(task_id, None)
            self._locks.pop(task_id, None)
        else:
            self._lock_users[task_id] = users

    def _event(self, event: str, payload: Dict[str, Any]) -> None:
        if self._event_log is not None:
            self._event_log.write(event, payload)

    async def submit(self, task_id: int, prediction: Any, confidence: float = 0.0) -> str:
        """
        Submit the result for `task_id` unless it is already settled.

        Returns:
            The settlement outcome ("submitted" or "already_settled").

        Raises:
            SettlementFailed: when every attempt failed or was refused.
        """
        lock = self._acquire_slot(task_id)
        try:
            async with lock:
                return await self._submit_locked(task_id, prediction, confidence)
        finally:
            self._release_slot(task_id)

    async def _submit_locked(self, task_id: int, prediction: Any, confidence: float) -> str:
        existing = self.store.get_settlement(task_id)
        if existing is not None and existing.submitted:
            logger.info("settlement_skipped task_id=%s outcome=%s (already submitted)", task_id, existing.outcome)
            return existing.outcome or OUTCOME_SUBMITTED

        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            record = self.store.record_settlement_attempt(task_id, prediction, confidence)
            try:
                result = await asyncio.wait_for(
                    self.ledger.submit_result(task_id, record.prediction),
                    timeout=self.call_timeout,
                )
            except (LedgerTransientError, LedgerRequestError, asyncio.TimeoutError) as exc:
                last_error = str(exc) or type(exc).__name__
                logger.warning(
                    "settlement_attempt_failed task_id=%s attempt=%s/%s err=%s",
                    task_id,
                    attempt,
                    self.max_attempts,
                    last_error,
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_for(attempt))
                continue

            outcome = OUTCOME_SUBMITTED if result == LedgerResult.SUCCESS else OUTCOME_ALREADY_SETTLED
            self.store.mark_settled(task_id, outcome)
            logger.info("settlement_done task_id=%s outcome=%s attempt=%s", task_id, outcome, attempt)
            self._event(
                "settlement_submitted",
                {"task_id": task_id, "outcome": outcome, "attempt": attempt},
            )
            return outcome

        logger.error("settlement_failed task_id=%s attempts=%s last_error=%s", task_id, self.max_attempts, last_error)
        self._event(
            "settlement_failed",
            {"task_id": task_id, "attempts": self.max_attempts, "error": last_error},
        )
        raise SettlementFailed(
            f"ledger submission failed after {self.max_attempts} attempts: {last_error}",
            task_id=task_id,
            attempts=self.max_attempts,
        )
