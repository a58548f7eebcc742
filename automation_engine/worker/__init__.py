# Background worker
from .worker import Worker, run_worker

__all__ = ["Worker", "run_worker"]
