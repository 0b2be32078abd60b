"""EthML dispatch network - coordinator server, worker agents and wire protocol.

Shared, transport-free pieces live in `compute`:

    from compute.models import Job, Task, TaskStatus
    from compute.storage import TaskQueue, TaskStore
"""

from __future__ import annotations

__version__ = "1.0.0"

__all__ = [
    "__version__",
]
