from __future__ import annotations


class BackupError(Exception):
    """Base class for errors raised while running a backup."""


class ForgeError(BackupError):
    """Raised when the GitHub API returns an unexpected response."""


class AuthError(ForgeError):
    """Raised when GitHub rejects the configured credentials."""


class TransientError(ForgeError):
    """Raised for network failures and 5xx responses; the call may be retried."""


class StoreUnavailable(BackupError):
    """Raised when the object store cannot be listed."""


class MalformedTimestamp(BackupError, ValueError):
    """Raised when text does not match the run timestamp layout."""


class RepositoryFailure(BackupError):
    """Raised when a single repository cannot be backed up."""

    def __init__(self, repository: str, message: str) -> None:
        super().__init__(f"{repository}: {message}")
        self.repository = repository


class CloneFailure(RepositoryFailure):
    """Raised when a mirror clone or credential removal fails."""


class ArchiveFailure(RepositoryFailure):
    """Raised when a local clone cannot be packed into a tar archive."""


class UploadFailure(RepositoryFailure):
    """Raised when an artifact cannot be stored in the bucket."""


class DeleteFailure(BackupError):
    """Raised when an expired object cannot be removed from the bucket."""

    def __init__(self, key: str, message: str) -> None:
        super().__init__(f"{key}: {message}")
        self.key = key


class SweepError(BackupError):
    """Raised after a retention sweep in which one or more deletions failed."""

    def __init__(self, message: str, report: object) -> None:
        super().__init__(message)
        self.report = report
