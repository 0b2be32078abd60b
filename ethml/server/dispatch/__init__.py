"""Job dispatch: worker selection, pending assignments and stats."""

from .dispatcher import Dispatcher, WorkerTransport
from .pending import Assignment, PendingAssignments
from .stats import DispatchStats

__all__ = ["Assignment", "Dispatcher", "DispatchStats", "PendingAssignments", "WorkerTransport"]
