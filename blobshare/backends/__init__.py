"""
Storage backends.
"""

from .local import LocalBlobStore, TempTag

__all__ = ["LocalBlobStore", "TempTag"]
