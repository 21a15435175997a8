from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class ValidationError(AppError):
    pass


class ConflictError(AppError):
    pass


class MalformedRecordError(AppError):
    """Change-feed record that cannot be turned into a Message."""


class CollaboratorError(AppError):
    """Failure reported by an external collaborator (store, feed, blobs)."""


class UploadError(CollaboratorError):
    pass


class DownloadError(CollaboratorError):
    pass


class PersistenceError(CollaboratorError):
    pass
