"""Environment-driven configuration for the EthML coordinator."""

from __future__ import annotations

import os
from typing import Callable, Optional, TypeVar

from dotenv import load_dotenv

load_dotenv()

T = TypeVar("T")


def _env(key: str, cast: Callable[[str], T], default: T) -> T:
    """Read `key` and cast it; unset, blank or malformed values give `default`."""
    raw = (os.getenv(key) or "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        return default


def _flag(raw: str) -> bool:
    return raw.lower() in {"1", "true", "yes", "on"}


def _optional(key: str, default: Optional[str] = None) -> Optional[str]:
    return (os.getenv(key) or "").strip() or default


# Environment profile (local | testing | production) ---------------------- #
# Controls default values across the coordinator configuration.
ENVIRONMENT = os.getenv("ETHML_ENV", "local").strip().lower()

if ENVIRONMENT not in {"local", "testing", "production"}:
    ENVIRONMENT = "local"

TESTING = _env("ETHML_TESTING", _flag, ENVIRONMENT == "testing")

# Profile-specific defaults
if ENVIRONMENT == "local":
    REPLY_TIMEOUT_DEFAULT = 60.0  # seconds
    HEARTBEAT_INTERVAL_DEFAULT = 5.0
    HEARTBEAT_TIMEOUT_DEFAULT = 20.0
    LEDGER_MAX_ATTEMPTS_DEFAULT = 3
elif ENVIRONMENT == "testing":
    REPLY_TIMEOUT_DEFAULT = 10.0
    HEARTBEAT_INTERVAL_DEFAULT = 1.0
    HEARTBEAT_TIMEOUT_DEFAULT = 5.0
    LEDGER_MAX_ATTEMPTS_DEFAULT = 2
else:  # production
    REPLY_TIMEOUT_DEFAULT = 120.0
    HEARTBEAT_INTERVAL_DEFAULT = 5.0
    HEARTBEAT_TIMEOUT_DEFAULT = 30.0
    LEDGER_MAX_ATTEMPTS_DEFAULT = 5

# Queue backing store ------------------------------------------------------ #

QUEUE_DB_PATH = _optional("ETHML_QUEUE_DB_PATH", "./data/queue.db")
TASK_DB_PATH = _optional("ETHML_TASK_DB_PATH", "./data/tasks.db")

# Ledger collaborator ------------------------------------------------------ #

LEDGER_ENDPOINT = _optional("ETHML_LEDGER_ENDPOINT", "http://127.0.0.1:8545")
CONTRACT_ADDRESS = _optional("ETHML_CONTRACT_ADDRESS")
LEDGER_ACCOUNT = _optional("ETHML_LEDGER_ACCOUNT")
# The local profile runs against the in-memory ledger unless told otherwise.
USE_MOCK_LEDGER = _env("ETHML_USE_MOCK_LEDGER", _flag, ENVIRONMENT == "local")

# Settlement retry policy: attempt n waits base * 2**(n-1), capped at max.
LEDGER_MAX_ATTEMPTS = max(1, _env("ETHML_LEDGER_MAX_ATTEMPTS", int, LEDGER_MAX_ATTEMPTS_DEFAULT))
LEDGER_BACKOFF_BASE_SECONDS = _env("ETHML_LEDGER_BACKOFF_BASE_SECONDS", float, 1.0)
LEDGER_BACKOFF_MAX_SECONDS = _env("ETHML_LEDGER_BACKOFF_MAX_SECONDS", float, 30.0)
LEDGER_CALL_TIMEOUT_SECONDS = _env("ETHML_LEDGER_CALL_TIMEOUT_SECONDS", float, 30.0)

# Worker liveness ---------------------------------------------------------- #

HEARTBEAT_INTERVAL_SECONDS = _env("ETHML_HEARTBEAT_INTERVAL_SECONDS", float, HEARTBEAT_INTERVAL_DEFAULT)
HEARTBEAT_TIMEOUT_SECONDS = _env("ETHML_HEARTBEAT_TIMEOUT_SECONDS", float, HEARTBEAT_TIMEOUT_DEFAULT)

# Dispatch ----------------------------------------------------------------- #

REPLY_TIMEOUT_SECONDS = _env("ETHML_REPLY_TIMEOUT_SECONDS", float, REPLY_TIMEOUT_DEFAULT)
# Bound concurrent in-flight dispatches (one asyncio task per job).
DISPATCH_CONCURRENCY = max(1, _env("ETHML_DISPATCH_CONCURRENCY", int, 64))

# Logging and event log ---------------------------------------------------- #

LOG_LEVEL = os.getenv("ETHML_LOG_LEVEL", "DEBUG" if TESTING else "INFO")
EVENT_LOG_ENABLED = _env("ETHML_EVENT_LOG_ENABLED", _flag, True)
EVENT_LOG_PATH = _optional("ETHML_EVENT_LOG_PATH", "logs/events/coordinator.jsonl")

# HTTP endpoint configuration ---------------------------------------------- #

HTTP_PORT = _env("ETHML_HTTP_PORT", int, 3000)
HTTP_HOST = os.getenv("ETHML_HTTP_HOST", "0.0.0.0")

__all__ = [
    "ENVIRONMENT",
    "TESTING",
    "QUEUE_DB_PATH",
    "TASK_DB_PATH",
    "LEDGER_ENDPOINT",
    "CONTRACT_ADDRESS",
    "LEDGER_ACCOUNT",
    "USE_MOCK_LEDGER",
    "LEDGER_MAX_ATTEMPTS",
    "LEDGER_BACKOFF_BASE_SECONDS",
    "LEDGER_BACKOFF_MAX_SECONDS",
    "LEDGER_CALL_TIMEOUT_SECONDS",
    "HEARTBEAT_INTERVAL_SECONDS",
    "HEARTBEAT_TIMEOUT_SECONDS",
    "REPLY_TIMEOUT_SECONDS",
    "DISPATCH_CONCURRENCY",
    "LOG_LEVEL",
    "EVENT_LOG_ENABLED",
    "EVENT_LOG_PATH",
    "HTTP_PORT",
    "HTTP_HOST",
]
