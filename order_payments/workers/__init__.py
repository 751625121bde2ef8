"""Background workers for polling, side-effect dispatch and retention."""
from .dispatch_worker import run_dispatch_cycle, start_dispatch_worker
from .poll_worker import start_poll_worker
from .retention_worker import purge_once, start_retention_worker

__all__ = [
    "run_dispatch_cycle",
    "start_dispatch_worker",
    "start_poll_worker",
    "purge_once",
    "start_retention_worker",
]
