"""SQLite-backed durable storage for jobs, task status and settlements."""

from .task_queue import TaskQueue
from .task_store import TaskStore

__all__ = ["TaskQueue", "TaskStore"]
