"""Worker agent side of the dispatch network."""

from .base import WorkerAgent, sample_load

__all__ = ["WorkerAgent", "sample_load"]
