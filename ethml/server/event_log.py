"""
Append-only JSONL audit trail of how each task was routed.

One line per event (`ts`, `event`, then the payload): job intake, the worker
set and index chosen for every dispatch attempt, replies, requeues with their
reason, settlement outcomes and worker evictions. Writes are best effort; a
full disk or missing directory is logged and never fails the dispatch path.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Union

logger = logging.getLogger(__name__)


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return str(value)


class DispatchEventLog:
    def __init__(self, path: Union[str, Path], *, enabled: bool = True) -> None:
        self.path = Path(path)
        self.enabled = enabled
        self._lock = Lock()
        if enabled:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.warning("event log disabled: cannot create %s (%s)", self.path.parent, exc)
                self.enabled = False

    def write(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        line = json.dumps({"ts": time.time(), "event": event, **payload}, default=_encode)
        try:
            with self._lock, self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.debug("event log write failed event=%s err=%s", event, exc)
