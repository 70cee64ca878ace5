"""Typed errors raised by the queue service and matchmaking commit."""

from __future__ import annotations


class QueueError(Exception):
    code = "queue_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(QueueError):
    code = "validation_failed"


class ConflictError(QueueError):
    code = "conflict"


class AlreadyQueuedError(ConflictError):
    code = "already_queued"


class NotQueuedError(ConflictError):
    code = "not_queued"


class NotFoundError(QueueError):
    code = "not_found"


class NotLeaderError(QueueError):
    code = "not_leader"


class CommitAborted(QueueError):
    """The group could not be committed; no record was changed."""

    code = "commit_aborted"


class TransientStoreError(QueueError):
    code = "store_unavailable"
