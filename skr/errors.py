"""
Error types for skr.

Every failure raised by the store, resolver, installer and remote client is a
``SkrError``. The HTTP layer maps ``NotFoundError`` to 404,
``InvalidReferenceError`` to 400 and everything else to 500.
"""

import threading


class SkrError(Exception):
    """Base class for all skr errors."""


class NotFoundError(SkrError):
    """Unknown reference, digest, tag or repository."""

    def __init__(self, message: str, code: str = "NOT_FOUND"):
        super().__init__(message)
        self.code = code


class InvalidReferenceError(SkrError):
    """Malformed reference, tag, repository name or digest."""

    def __init__(self, message: str, code: str = "NAME_INVALID"):
        super().__init__(message)
        self.code = code


class StoreIOError(SkrError):
    """Filesystem I/O failure inside the store or installer."""


class ManifestDecodeError(SkrError):
    """Manifest, config or annotation JSON could not be decoded."""


class ArchiveSafetyError(SkrError):
    """Layer archive entry would escape its extraction root."""


class SchemaViolationError(SkrError):
    """Artifact or skill metadata does not have the required shape."""


class ResolutionError(SkrError):
    """Dependency resolution failed for a reference."""

    def __init__(self, reference: str, message: str):
        super().__init__(f"failed to resolve {reference}: {message}")
        self.reference = reference


class RegistryError(SkrError):
    """Remote registry request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class OperationCancelled(SkrError):
    """The caller cancelled a long-running operation."""


def check_cancelled(cancel: threading.Event | None) -> None:
    """Raise OperationCancelled if ``cancel`` has been set."""
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("operation cancelled")
