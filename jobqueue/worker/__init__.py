"""
Worker module.
Contains the dispatcher, the worker pool and the handler registry.
"""

from jobqueue.worker.dispatcher import Dispatcher
from jobqueue.worker.main import Worker, run
from jobqueue.worker.pool import WorkerPool
from jobqueue.worker.registry import HandlerRegistry, JobHandler, load_registry

__all__ = [
    "Dispatcher",
    "HandlerRegistry",
    "JobHandler",
    "Worker",
    "WorkerPool",
    "load_registry",
    "run",
]
