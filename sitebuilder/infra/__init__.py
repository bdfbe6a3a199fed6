"""
Infrastructure components for background processing.

Outbound webhook calls and API key usage metering never run on the
request path; they are handed to the in-process worker pool defined
here.
"""

from __future__ import annotations

from sitebuilder.infra.background_worker import (
    BackgroundWorkerPool,
    Task,
    TaskHandler,
    TaskStatus,
    TaskType,
)

__all__ = [
    "BackgroundWorkerPool",
    "Task",
    "TaskHandler",
    "TaskStatus",
    "TaskType",
]
