"""Environment-driven configuration for EthML worker agents."""

from __future__ import annotations

import os
import sys

from dotenv import load_dotenv

load_dotenv()


def _seconds(key: str, default: float) -> float:
    raw = (os.getenv(key) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


SERVER_URL = os.getenv("ETHML_SERVER_URL", "ws://127.0.0.1:3000/ws/worker")
MODELS_DIR = os.getenv("ETHML_MODELS_DIR", "./models")
PREDICTOR_PYTHON = os.getenv("ETHML_PREDICTOR_PYTHON", sys.executable)
PREDICTOR_TIMEOUT_SECONDS = _seconds("ETHML_PREDICTOR_TIMEOUT_SECONDS", 120.0)
RECONNECT_DELAY_SECONDS = _seconds("ETHML_RECONNECT_DELAY_SECONDS", 5.0)
# 0 means "use the interval announced by the coordinator in its welcome".
HEARTBEAT_SECONDS = _seconds("ETHML_WORKER_HEARTBEAT_SECONDS", 0.0)
LOG_LEVEL = os.getenv("ETHML_LOG_LEVEL", "INFO")

__all__ = [
    "SERVER_URL",
    "MODELS_DIR",
    "PREDICTOR_PYTHON",
    "PREDICTOR_TIMEOUT_SECONDS",
    "RECONNECT_DELAY_SECONDS",
    "HEARTBEAT_SECONDS",
    "LOG_LEVEL",
]
