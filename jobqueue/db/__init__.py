"""
Database module.
Contains database connection, models, and the durable job store.
"""

from jobqueue.db.connection import (
    SessionFactory,
    close_db,
    create_engine,
    create_session_factory,
    init_db,
)
from jobqueue.db.models import Base, Job, QueueState
from jobqueue.db.store import JobStore

__all__ = [
    "create_engine",
    "create_session_factory",
    "init_db",
    "close_db",
    "SessionFactory",
    "Job",
    "QueueState",
    "Base",
    "JobStore",
]
