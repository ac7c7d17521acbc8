from .dispatcher import JobDispatcher, StatusUpdateHandler
from .overdue_sweep import OverdueSweepHandler
from .pool import WorkerPool

__all__ = [
    "JobDispatcher",
    "OverdueSweepHandler",
    "StatusUpdateHandler",
    "WorkerPool",
]
