"""
Blobshare error taxonomy.

Import and export fail the whole operation; network errors are retried by
background tasks (announce) and surfaced directly by one-shot operations
(share/receive).
"""

from pathlib import Path
from typing import Optional


class BlobShareError(Exception):
    """Base class for all blobshare errors."""


class NotFoundError(BlobShareError):
    """Source path given to an import does not exist."""

    def __init__(self, path):
        self.path = Path(path)
        super().__init__(f"path {self.path} does not exist")


class InvalidPathError(BlobShareError, ValueError):
    """Path or manifest name violates the traversal/separator rules. Never retried."""


class DuplicateNameError(BlobShareError, ValueError):
    """Two manifest entries share the same name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"duplicate collection entry name: {name!r}")


class SourceChangedError(BlobShareError):
    """A file was removed or modified while it was being imported."""

    def __init__(self, path, reason: str = "changed during import"):
        self.path = Path(path)
        super().__init__(f"source file {self.path} {reason}")


class TargetExistsError(BlobShareError):
    """Export target already exists; nothing is overwritten."""

    def __init__(self, path):
        self.path = Path(path)
        super().__init__(
            f"target {self.path} already exists. Export stopped. "
            "You can remove the file or directory and try again. "
            "The download will not be repeated."
        )


class InvalidTicketError(BlobShareError, ValueError):
    """Ticket, content id or node address string could not be parsed."""


class ConnectFailedError(BlobShareError):
    """Could not establish an authenticated connection to a peer."""


class SendFailedError(BlobShareError):
    """Connection was established but the request/response exchange failed."""


class SignatureInvalidError(BlobShareError):
    """Signed announcement does not verify against its declared host."""


class BlobNotFoundError(BlobShareError):
    """Provider (or local store) does not have the requested blob."""

    def __init__(self, blob_hash, provider: Optional[str] = None):
        self.blob_hash = blob_hash
        self.provider = provider
        where = f" at {provider[:16]}..." if provider else ""
        super().__init__(f"blob {blob_hash} not found{where}")


class BlobVerificationError(BlobShareError):
    """Received bytes do not hash to the requested digest."""


class DownloadError(BlobShareError):
    """Every candidate provider failed for some blob."""
