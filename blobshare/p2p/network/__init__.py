"""
Network Protocol Layer

Blob request/response protocol and content downloader.
"""

from .protocol import BLOBS_ALPN, BlobsProtocol, fetch_blob
from .downloader import BlobDownloader, DownloadStats

__all__ = [
    "BLOBS_ALPN",
    "BlobsProtocol",
    "fetch_blob",
    "BlobDownloader",
    "DownloadStats"
]
