from __future__ import annotations


class FleetSyncError(Exception):
    """Base exception for FleetSync domain errors."""


class NotFoundError(FleetSyncError):
    """Raised when a work item or worker identifier is unknown."""


class ValidationError(FleetSyncError):
    """Raised for malformed filters, illegal status values or invalid records."""


class StorageError(FleetSyncError):
    """Raised when a backing file cannot be read or written.

    Always chained from the underlying ``OSError``.
    """


class NoHandleError(FleetSyncError):
    """Raised when a nudge needs a live process handle the worker does not have."""


class CancelledError(FleetSyncError):
    """Raised when an escalation is aborted through its cancellation token."""


class RpcError(FleetSyncError):
    """Error object returned by a worker over JSON-RPC."""

    def __init__(self, code: int, message: str, data: object | None = None):
        super().__init__(f"rpc error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data
