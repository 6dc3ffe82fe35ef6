"""Exception taxonomy for the synchronization client.

Every failure the transport can produce maps to one of these types. The poller, the
subscription controller and the session catch them at their boundary so a sync failure
never terminates the process.
"""

from __future__ import annotations


class TaskSyncError(Exception):
    """Base class for all client-side synchronization failures."""


class TransportError(TaskSyncError):
    """Request rejected by the backend or the connection dropped."""


class TaskNotFoundError(TaskSyncError):
    """Backend answered 404 for a task-scoped request."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class MalformedPayloadError(TaskSyncError):
    """Response body could not be decoded into the expected shape."""


class InvalidTaskInputError(TaskSyncError, ValueError):
    """User input rejected before any request was sent."""
