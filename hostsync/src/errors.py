from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for every error raised by the hostname sync engine."""


class AlreadyRunningError(SyncError):
    """Raised by ``start()`` on a component that is already running."""


class NotRunningError(SyncError):
    """Raised by ``stop()`` on a component that was never started or is already stopped."""


class StopTimeoutError(SyncError):
    """Raised when a background thread does not exit within the stop timeout."""


class TransportError(SyncError):
    """Listing, watching or updating Services through the Kubernetes API failed.

    ``status`` carries the HTTP status of the underlying ``ApiException`` when
    one is available (``410`` for an expired watch, ``409`` for a write
    conflict, and so on).
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ConfigParseError(SyncError):
    """A source annotation value could not be parsed as an Ambassador config."""


class DesignatedResourceNotFoundError(SyncError):
    """The designated Service was not present in the cluster listing."""

    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(
            f"Failed to find service {namespace}/{name} to update the external-dns annotation on"
        )
        self.namespace = namespace
        self.name = name
