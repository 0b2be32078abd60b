"""
Messages exchanged between the coordinator and worker agents.

Every frame on the worker WebSocket is one JSON object with a `type` field.
The models below validate frames on both sides and keep the payloads small
and self-descriptive.

    server -> agent   welcome, dispatch
    agent  -> server  status, result, error
"""

from __future__ import annotations

import json
from typing import Any, Dict, Literal, Optional, Type, Union

from pydantic import BaseModel, Field, ValidationError

from compute.errors import ProtocolError
from compute.models import Job, Prediction, WorkerStatus

PROTOCOL_VERSION = "ethml.v1"


class WelcomeMessage(BaseModel):
    """Sent once after the socket is accepted; carries the connection id."""

    type: Literal["welcome"] = "welcome"
    version: str = Field(default=PROTOCOL_VERSION)
    worker_id: str
    heartbeat_interval: float = Field(default=5.0)

    class Config:
        extra = "ignore"


class StatusMessage(BaseModel):
    """Periodic heartbeat with the worker's own load figures."""

    type: Literal["status"] = "status"
    cpu_load: float = Field(default=0.0)
    mem_load: float = Field(default=0.0)
    active_jobs: int = Field(default=0)

    class Config:
        extra = "ignore"

    def to_status(self) -> WorkerStatus:
        return WorkerStatus.clamped(self.cpu_load, self.mem_load, self.active_jobs)

    @classmethod
    def from_status(cls, status: WorkerStatus) -> "StatusMessage":
        return cls(cpu_load=status.cpu_load, mem_load=status.mem_load, active_jobs=status.active_jobs)


class DispatchMessage(BaseModel):
    """
    One job for the agent.

    `request_id` identifies this dispatch attempt; replies must echo it so a
    late answer to an earlier attempt of the same task can be told apart.
    `timeout_s` is the coordinator's reply deadline, relative to receipt.
    """

    type: Literal["dispatch"] = "dispatch"
    request_id: str
    task_id: int
    model_id: int
    data_point: str
    timeout_s: float = Field(default=30.0)

    class Config:
        extra = "ignore"

    @classmethod
    def from_job(cls, job: Job, *, request_id: str, timeout_s: float) -> "DispatchMessage":
        return cls(
            request_id=request_id,
            task_id=job.task_id,
            model_id=job.model_id,
            data_point=job.data_point,
            timeout_s=timeout_s,
        )


class ResultMessage(BaseModel):
    type: Literal["result"] = "result"
    request_id: str
    task_id: int
    prediction: Any
    confidence: float = Field(default=0.0)

    class Config:
        extra = "ignore"

    def to_prediction(self) -> Prediction:
        return Prediction(prediction=self.prediction, confidence=self.confidence)


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    request_id: str
    task_id: int
    error: str = Field(default="")

    class Config:
        extra = "ignore"


Message = Union[WelcomeMessage, StatusMessage, DispatchMessage, ResultMessage, ErrorMessage]
Reply = Union[ResultMessage, ErrorMessage]

_MESSAGE_TYPES: Dict[str, Type[BaseModel]] = {
    "welcome": WelcomeMessage,
    "status": StatusMessage,
    "dispatch": DispatchMessage,
    "result": ResultMessage,
    "error": ErrorMessage,
}


def parse_message(raw: Union[str, bytes, Dict[str, Any]]) -> Message:
    """
    Decode and validate one frame.

    Raises:
        ProtocolError: on invalid JSON, unknown `type` or bad fields.
    """
    data: Any = raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"invalid JSON frame: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError(f"frame must be an object, got {type(data).__name__}")
    kind: Optional[str] = data.get("type")
    model = _MESSAGE_TYPES.get(str(kind))
    if model is None:
        raise ProtocolError(f"unknown message type: {kind!r}")
    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError as exc:
        raise ProtocolError(f"invalid {kind} message: {exc}") from exc


def dump_message(message: BaseModel) -> Dict[str, Any]:
    return message.model_dump(mode="json")
