from __future__ import annotations


class ControllerError(RuntimeError):
    """Base class for every error raised by the controller."""


class ConfigError(ControllerError):
    """Raised when the controller configuration is invalid."""


class CrdNotInstalledError(ControllerError):
    """Raised at startup when the NooBaaSource CRD cannot be listed."""


class ResourceDecodeError(ControllerError, ValueError):
    """Raised when a watched object does not match the NooBaaSource schema."""


class ReconcileError(ControllerError):
    """A reconcile step failed against the API server.

    ``cause`` holds the underlying transport or storage error so the error
    policy and logs can report it without unwrapping ``__cause__``.
    """

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class StatusPatchError(ReconcileError):
    """Server-side apply of the status sub-resource failed."""


class EventPublishError(ReconcileError):
    """Publishing the domain event failed."""
