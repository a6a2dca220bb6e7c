"""
Local filesystem blob store.

Stores content-addressed blobs on local disk with a two-character fan-out,
tracks pins (temporary tags) and named tags, and garbage-collects blobs that
no pin or tag can reach.
"""

import asyncio
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Iterator, List, Set, Union
import logging

import msgpack

from blobshare.core.content_addressing import (
    BlobFormat,
    ContentAddressingEngine,
    Hash,
    HashAndFormat,
    decode_hash_seq,
)
from blobshare.core.errors import BlobNotFoundError, BlobVerificationError

logger = logging.getLogger(__name__)


TAGS_FILE = "tags.msgpack"


class TempTag:
    """
    Pin on a blob in a LocalBlobStore.

    While at least one TempTag for a HashAndFormat is alive, ``gc`` keeps the
    blob (and, for hash sequences, every blob it lists). ``release`` is
    idempotent. Usable as a context manager.
    """

    def __init__(self, store: "LocalBlobStore", content: HashAndFormat):
        self._store = store
        self.content = content
        self._released = False

    @property
    def hash(self) -> Hash:
        return self.content.hash

    @property
    def format(self) -> BlobFormat:
        return self.content.format

    @property
    def released(self) -> bool:
        return self._released

    def release(self):
        """Drop this pin."""
        if not self._released:
            self._released = True
            self._store._unpin(self.content)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"TempTag({self.content}, {state})"


class LocalBlobStore:
    """
    Local filesystem blob store.

    Directory structure:
    store_dir/
        blobs/
            AB/
                ABCDEF...123.blob
        partial/
            CDEF...456.partial
        tags.msgpack

    Uses first 2 characters of the hash as directory prefix
    to avoid having too many files in a single directory.
    """

    def __init__(self, store_dir: Union[str, Path]):
        """
        Initialize local blob store.

        Args:
            store_dir: Base directory for storage (created if missing)
        """
        self.store_dir = Path(store_dir)
        self.blobs_dir = self.store_dir / "blobs"
        self.partial_dir = self.store_dir / "partial"
        self.blobs_dir.mkdir(parents=True, exist_ok=True)
        self.partial_dir.mkdir(parents=True, exist_ok=True)

        self.content_addressing = ContentAddressingEngine()

        # HashAndFormat -> live TempTag count
        self._pins: Dict[HashAndFormat, int] = {}
        # name -> HashAndFormat
        self._tags: Dict[str, HashAndFormat] = self._load_tags()

        logger.info(f"Initialized local blob store at {self.store_dir}")

    # Adding content

    def add_bytes(self, data: bytes, fmt: BlobFormat = BlobFormat.RAW) -> TempTag:
        """
        Store bytes and pin them.

        Args:
            data: Blob content
            fmt: Format tag for the returned pin

        Returns:
            TempTag owned by the caller
        """
        blob_hash = self.content_addressing.compute_hash(data)
        target = self._blob_path(blob_hash)
        if not target.exists():
            self._write_atomic(target, data)
            logger.debug(f"Stored {blob_hash.hex[:16]}... ({len(data)} bytes)")
        return self._pin(HashAndFormat(blob_hash, fmt))

    async def add_path(self, path: Union[str, Path]) -> TempTag:
        """
        Import a file, hashing it in a worker thread.

        Args:
            path: File to import

        Returns:
            TempTag on the file's RAW blob

        Raises:
            FileNotFoundError: If the file vanished
            OSError: On any other read error
        """
        blob_hash = await asyncio.to_thread(self._import_file, Path(path))
        return self._pin(HashAndFormat.raw(blob_hash))

    def _import_file(self, path: Path) -> Hash:
        hasher = self.content_addressing.hasher()
        fd, tmp_name = tempfile.mkstemp(dir=self.partial_dir, suffix=".import")
        try:
            with os.fdopen(fd, "wb") as out, open(path, "rb") as src:
                while True:
                    chunk = src.read(256 * 1024)
                    if not chunk:
                        break
                    hasher.update(chunk)
                    out.write(chunk)
            blob_hash = Hash(hasher.digest())
            target = self._blob_path(blob_hash)
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"Imported {path} as {blob_hash.hex[:16]}...")
        return blob_hash

    # Reading content

    def has(self, blob_hash: Hash) -> bool:
        """Check if a complete blob is present."""
        return self._blob_path(blob_hash).exists()

    def size(self, blob_hash: Hash) -> int:
        """Size of a stored blob in bytes."""
        try:
            return self._blob_path(blob_hash).stat().st_size
        except FileNotFoundError:
            raise BlobNotFoundError(blob_hash) from None

    def get_bytes(self, blob_hash: Hash) -> bytes:
        """
        Read a whole blob.

        Raises:
            BlobNotFoundError: If the blob is not in the store
        """
        try:
            return self._blob_path(blob_hash).read_bytes()
        except FileNotFoundError:
            raise BlobNotFoundError(blob_hash) from None

    def read_range(self, blob_hash: Hash, offset: int, length: int) -> bytes:
        """Read ``length`` bytes starting at ``offset``."""
        try:
            with open(self._blob_path(blob_hash), "rb") as f:
                f.seek(offset)
                return f.read(length)
        except FileNotFoundError:
            raise BlobNotFoundError(blob_hash) from None

    async def export(self, blob_hash: Hash, target: Union[str, Path]) -> int:
        """
        Copy a blob's bytes to ``target``, creating parent directories.

        Returns:
            Number of bytes written
        """
        source = self._blob_path(blob_hash)
        if not source.exists():
            raise BlobNotFoundError(blob_hash)
        target = Path(target)

        def _copy() -> int:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
            return target.stat().st_size

        size = await asyncio.to_thread(_copy)
        logger.debug(f"Exported {blob_hash.hex[:16]}... to {target} ({size} bytes)")
        return size

    # Partial downloads

    def partial_path(self, blob_hash: Hash) -> Path:
        """Location of the in-progress download for a blob."""
        return self.partial_dir / f"{blob_hash.hex}.partial"

    def partial_size(self, blob_hash: Hash) -> int:
        """Bytes already received for a blob (0 if none)."""
        try:
            return self.partial_path(blob_hash).stat().st_size
        except FileNotFoundError:
            return 0

    def discard_partial(self, blob_hash: Hash):
        self.partial_path(blob_hash).unlink(missing_ok=True)

    def finalize_partial(self, blob_hash: Hash) -> int:
        """
        Verify a completed partial download and move it into the store.

        Returns:
            Blob size in bytes

        Raises:
            BlobVerificationError: If the bytes do not hash to ``blob_hash``
                (the partial file is discarded)
        """
        partial = self.partial_path(blob_hash)
        actual, size = self.content_addressing.compute_file_hash(partial)
        if actual != blob_hash:
            partial.unlink(missing_ok=True)
            raise BlobVerificationError(
                f"received data hashes to {actual.hex[:16]}..., expected {blob_hash.hex[:16]}..."
            )
        target = self._blob_path(blob_hash)
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(partial, target)
        return size

    # Pins and tags

    def pin(self, content: HashAndFormat) -> TempTag:
        """Create an additional pin on content already in the store."""
        if not self.has(content.hash):
            raise BlobNotFoundError(content.hash)
        return self._pin(content)

    def _pin(self, content: HashAndFormat) -> TempTag:
        self._pins[content] = self._pins.get(content, 0) + 1
        return TempTag(self, content)

    def _unpin(self, content: HashAndFormat):
        count = self._pins.get(content, 0) - 1
        if count > 0:
            self._pins[content] = count
        else:
            self._pins.pop(content, None)

    def pinned(self) -> List[HashAndFormat]:
        """Content currently protected by at least one TempTag."""
        return list(self._pins)

    def set_tag(self, name: str, content: HashAndFormat):
        """Create or replace a persistent named tag."""
        self._tags[name] = content
        self._save_tags()

    def delete_tag(self, name: str) -> bool:
        if self._tags.pop(name, None) is None:
            return False
        self._save_tags()
        return True

    def tags(self) -> Dict[str, HashAndFormat]:
        return dict(self._tags)

    def _load_tags(self) -> Dict[str, HashAndFormat]:
        path = self.store_dir / TAGS_FILE
        if not path.exists():
            return {}
        raw = msgpack.unpackb(path.read_bytes())
        return {name: HashAndFormat.parse(content) for name, content in raw.items()}

    def _save_tags(self):
        data = msgpack.packb({name: str(content) for name, content in self._tags.items()})
        self._write_atomic(self.store_dir / TAGS_FILE, data)

    # Garbage collection

    def list_all(self) -> Iterator[Hash]:
        """Iterate over every complete blob in the store."""
        for prefix_dir in self.blobs_dir.iterdir():
            if not prefix_dir.is_dir():
                continue
            for file_path in prefix_dir.glob("*.blob"):
                yield Hash.from_hex(file_path.stem)

    def _live_set(self) -> Set[Hash]:
        live: Set[Hash] = set()
        roots = list(self._pins) + list(self._tags.values())
        for content in roots:
            live.add(content.hash)
            if content.is_hash_seq and self.has(content.hash):
                live.update(decode_hash_seq(self.get_bytes(content.hash)))
        return live

    def gc(self) -> int:
        """
        Delete every blob not reachable from a pin or tag.

        Returns:
            Number of blobs deleted
        """
        live = self._live_set()
        deleted = 0
        for blob_hash in list(self.list_all()):
            if blob_hash in live:
                continue
            path = self._blob_path(blob_hash)
            path.unlink(missing_ok=True)
            self._cleanup_empty_dirs(path.parent)
            deleted += 1
        logger.info(f"GC complete: {deleted} blobs deleted, {len(live)} live")
        return deleted

    # Internal methods

    def _blob_path(self, blob_hash: Hash) -> Path:
        """Get file path for a hash."""
        hex_hash = blob_hash.hex
        return self.blobs_dir / hex_hash[:2] / f"{hex_hash}.blob"

    def _write_atomic(self, target: Path, data: bytes):
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _cleanup_empty_dirs(self, directory: Path):
        """Clean up an empty fan-out directory."""
        if directory != self.blobs_dir and directory.is_dir() and not any(directory.iterdir()):
            directory.rmdir()
            logger.debug(f"Cleaned up empty directory {directory}")
