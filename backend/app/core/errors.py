from __future__ import annotations


class ExplorerError(Exception):
    """Base class for errors surfaced to API callers."""


class NotFound(ExplorerError):
    pass


class InvalidState(ExplorerError):
    pass


# Upload errors: reported inline, no job is created.
class UploadError(ExplorerError):
    pass


class InvalidFormat(UploadError):
    pass


class PayloadTooLarge(UploadError):
    pass


# Start errors: rejected before any process is spawned.
class JobStartError(ExplorerError):
    pass


class InvalidParams(JobStartError):
    pass


class AlreadyStarted(JobStartError):
    pass


class ConnectionUnresolved(JobStartError):
    pass


class ProcessSpawnError(ExplorerError):
    """The external tool could not be executed (missing binary, permissions)."""
