"""
Cleanup module.
Applies age and count retention to finished jobs.
"""

from jobqueue.cleanup.sweeper import CleanupSweeper

__all__ = ["CleanupSweeper"]
