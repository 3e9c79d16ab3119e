"""Error taxonomy for the attachment store."""

from __future__ import annotations


class AttachmentStoreError(Exception):
    retryable = False

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class SizeMismatchError(AttachmentStoreError):
    """Declared size and the bytes actually read disagree."""

    def __init__(self, message: str = "Declared size does not match content", *, expected=None, actual=None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class PlacementError(AttachmentStoreError):
    """No physical key could be chosen (unknown disk, exhausted namespace)."""

    retryable = True


class StorageWriteError(AttachmentStoreError):
    """Writing bytes or committing metadata failed."""

    retryable = True


class NotFoundError(AttachmentStoreError):
    def __init__(self, message: str = "Attachment not found") -> None:
        super().__init__(message)
