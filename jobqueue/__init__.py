"""
Multi-queue Job Engine

An asyncio job queue with durable SQL-backed state: prioritised leasing,
per-queue concurrency limits, retry with backoff, stalled-job recovery,
retention sweeps and queue health reporting.
"""

__version__ = "1.0.0"
