"""Exceptions raised by the offline queue and its collaborators."""
from __future__ import annotations


class QueueError(Exception):
    """Base class for queue failures surfaced to callers."""


class ValidationError(QueueError, ValueError):
    """Raised at enqueue time when a payload is malformed; nothing is stored."""


class NotFoundError(QueueError, LookupError):
    def __init__(self, operation_id: int):
        super().__init__(f"Operation {operation_id} not found")
        self.operation_id = operation_id


class InvalidTransitionError(QueueError):
    def __init__(self, operation_id: int, status: str, action: str):
        super().__init__(f"Cannot {action} operation {operation_id} in status '{status}'")
        self.operation_id = operation_id
        self.status = status


class StorageError(QueueError):
    """The operation store could not be read or written."""


class SyncClientError(Exception):
    """The remote API could not answer a non-queue request (e.g. status)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigError(ValueError):
    pass


__all__ = [
    "ConfigError",
    "InvalidTransitionError",
    "NotFoundError",
    "QueueError",
    "StorageError",
    "SyncClientError",
    "ValidationError",
]
