"""Worker exception hierarchy. Channel send errors live in channels.base."""
from __future__ import annotations


class WorkerError(Exception):
    """Base exception for the message hub worker."""


class StartupError(WorkerError):
    """Unrecoverable bootstrap failure, e.g. no tenant configured."""


class EventParseError(WorkerError):
    """Raised by channel parsers; the normalizer turns it into a drop."""


class InvalidTransitionError(WorkerError):
    def __init__(self, entity: str, from_status: str, to_status: str):
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"{entity}: {from_status} -> {to_status} is not allowed")
