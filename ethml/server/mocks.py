"""In-memory ledger for offline coordinator runs.

Keeps the call semantics of the gateway client (transient errors, rejection
of a second settlement) without network access.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from typing import Any, Dict, List, Optional, Tuple

from compute.errors import LedgerRequestError, LedgerTransientError
from ethml.server.settlement.ledger_client import LedgerResult


class InMemoryLedger:
    def __init__(self, *, first_task_id: int = 0, latency: float = 0.0) -> None:
        self._ids = itertools.count(first_task_id)
        self.latency = latency
        self.tasks: Dict[int, Dict[str, Any]] = {}
        self.submissions: List[Tuple[int, Any]] = []
        # Number of upcoming submit_result calls that fail transiently.
        self.fail_next = 0

    async def _pause(self) -> None:
        # Yield to the loop even with zero latency.
        await asyncio.sleep(self.latency)

    async def request_prediction(self, model_id: int, data_point: str, tip: str) -> int:
        await self._pause()
        task_id = next(self._ids)
        self.tasks[task_id] = {
            "task_id": task_id,
            "model_id": int(model_id),
            "data_point": str(data_point),
            "tip": str(tip),
            "settled": False,
            "prediction": None,
            "created_at": time.time(),
        }
        return task_id

    def add_task(self, task_id: int, model_id: int, data_point: str, tip: str = "0") -> None:
        self.tasks[int(task_id)] = {
            "task_id": int(task_id),
            "model_id": int(model_id),
            "data_point": str(data_point),
            "tip": str(tip),
            "settled": False,
            "prediction": None,
            "created_at": time.time(),
        }

    async def get_task(self, task_id: int) -> Dict[str, Any]:
        await self._pause()
        task = self.tasks.get(int(task_id))
        if task is None:
            raise LedgerRequestError(f"unknown task {task_id}")
        return dict(task)

    async def submit_result(self, task_id: int, prediction: Any) -> LedgerResult:
        await self._pause()
        self.submissions.append((int(task_id), prediction))
        if self.fail_next > 0:
            self.fail_next -= 1
            raise LedgerTransientError("mock ledger unavailable")
        task = self.tasks.setdefault(int(task_id), {"task_id": int(task_id), "settled": False})
        if task.get("settled"):
            return LedgerResult.REJECTED
        task["settled"] = True
        task["prediction"] = prediction
        return LedgerResult.SUCCESS

    def submissions_for(self, task_id: int) -> List[Any]:
        return [p for t, p in self.submissions if t == int(task_id)]

    def settled(self, task_id: int) -> Optional[Any]:
        task = self.tasks.get(int(task_id))
        if task is None or not task.get("settled"):
            return None
        return task.get("prediction")


__all__ = ["InMemoryLedger"]
