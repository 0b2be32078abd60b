"""Dispatch counters and round-trip latency summary."""

from __future__ import annotations

import threading
from collections import Counter, deque
from typing import Deque, Dict

import numpy as np


class DispatchStats:
    def __init__(self, *, latency_window: int = 1024) -> None:
        self._lock = threading.Lock()
        self._counters: Counter = Counter()
        self._requeued: Counter = Counter()
        self._latencies: Deque[float] = deque(maxlen=max(1, int(latency_window)))

    def record(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def record_requeue(self, reason: str) -> None:
        with self._lock:
            self._counters["requeued"] += 1
            self._requeued[reason] += 1

    def record_latency(self, seconds: float) -> None:
        with self._lock:
            self._latencies.append(max(0.0, float(seconds)))

    def count(self, name: str) -> int:
        with self._lock:
            return int(self._counters.get(name, 0))

    def requeued(self, reason: str) -> int:
        with self._lock:
            return int(self._requeued.get(reason, 0))

    def latency_summary(self) -> Dict[str, float]:
        with self._lock:
            samples = np.asarray(self._latencies, dtype=float)
        if samples.size == 0:
            return {"count": 0, "mean": 0.0, "p50": 0.0, "p95": 0.0, "max": 0.0}
        return {
            "count": int(samples.size),
            "mean": float(np.mean(samples)),
            "p50": float(np.percentile(samples, 50)),
            "p95": float(np.percentile(samples, 95)),
            "max": float(np.max(samples)),
        }

    def snapshot(self) -> Dict:
        with self._lock:
            counters = dict(self._counters)
            requeued = dict(self._requeued)
        return {
            "counters": counters,
            "requeued_by_reason": requeued,
            "latency_seconds": self.latency_summary(),
        }
