"""Isolated worker units for document processing."""

from docshare.workers.pool import (
    FailureKind,
    PoolClosedError,
    WorkerFailure,
    WorkerPool,
    WorkerPoolError,
    WorkerTaskError,
)

__all__ = [
    "FailureKind",
    "PoolClosedError",
    "WorkerFailure",
    "WorkerPool",
    "WorkerPoolError",
    "WorkerTaskError",
]
