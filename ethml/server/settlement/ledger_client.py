"""
Client for the ledger gateway.

The coordinator does not talk to a chain node directly; it calls an HTTP
gateway in front of the prediction contract:

    POST /contracts/{address}/tasks                  requestPrediction
    GET  /contracts/{address}/tasks/{task_id}        getTask
    POST /contracts/{address}/tasks/{task_id}/result submitValidation

Only `submit_result` is on the dispatch path. The two intake calls are used by
the HTTP API.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import httpx

from compute.errors import LedgerRequestError, LedgerTransientError

logger = logging.getLogger(__name__)

# Rate limiting and gateway timeouts are retried like 5xx.
RETRYABLE_STATUS = frozenset({408, 429})
ALREADY_SETTLED_STATUS = 409


class LedgerResult(str, Enum):
    SUCCESS = "success"
    # The ledger already holds a settlement for the task.
    REJECTED = "rejected"


class LedgerClient(Protocol):
    async def submit_result(self, task_id: int, prediction: Any) -> LedgerResult:
        ...

    async def request_prediction(self, model_id: int, data_point: str, tip: str) -> int:
        ...

    async def get_task(self, task_id: int) -> Dict[str, Any]:
        ...


class HttpLedgerClient:
    """httpx-based ledger gateway client."""

    def __init__(
        self,
        endpoint: str,
        *,
        contract_address: Optional[str] = None,
        account: Optional[str] = None,
        timeout: float = 30.0,  # seconds
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.contract_address = contract_address or "default"
        self.account = account
        self.timeout = timeout
        self._transport = transport
        self.session: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "HttpLedgerClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def connect(self) -> httpx.AsyncClient:
        if self.session is None:
            self.session = httpx.AsyncClient(
                base_url=self.endpoint, timeout=self.timeout, transport=self._transport
            )
            logger.debug("ledger client connected endpoint=%s contract=%s", self.endpoint, self.contract_address)
        return self.session

    async def disconnect(self) -> None:
        if self.session is not None:
            await self.session.aclose()
            self.session = None

    def _path(self, suffix: str) -> str:
        return f"/contracts/{self.contract_address}{suffix}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        session = self.session or await self.connect()
        try:
            response = await session.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise LedgerTransientError(f"{method} {path}: {exc}") from exc
        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS:
            raise LedgerTransientError(f"{method} {path}: HTTP {response.status_code}")
        return response

    async def submit_result(self, task_id: int, prediction: Any) -> LedgerResult:
        response = await self._request(
            "POST",
            self._path(f"/tasks/{int(task_id)}/result"),
            json={"prediction": prediction, "from": self.account},
        )
        if response.status_code < 300:
            return LedgerResult.SUCCESS
        if response.status_code == ALREADY_SETTLED_STATUS:
            logger.info("ledger already settled task_id=%s body=%s", task_id, response.text[:200])
            return LedgerResult.REJECTED
        raise LedgerRequestError(
            f"submitValidation({task_id}) refused: HTTP {response.status_code} {response.text[:200]}"
        )

    async def request_prediction(self, model_id: int, data_point: str, tip: str) -> int:
        response = await self._request(
            "POST",
            self._path("/tasks"),
            json={
                "model_id": int(model_id),
                "data_point": str(data_point),
                "tip": str(tip),
                "from": self.account,
            },
        )
        if response.status_code >= 300:
            raise LedgerRequestError(f"requestPrediction failed: HTTP {response.status_code} {response.text[:200]}")
        data = response.json()
        try:
            return int(data["task_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerRequestError(f"requestPrediction returned no task_id: {data!r}") from exc

    async def get_task(self, task_id: int) -> Dict[str, Any]:
        response = await self._request("GET", self._path(f"/tasks/{int(task_id)}"))
        if response.status_code >= 300:
            raise LedgerRequestError(f"getTask({task_id}) failed: HTTP {response.status_code}")
        return response.json()
