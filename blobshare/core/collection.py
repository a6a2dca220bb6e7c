"""
Collections: ordered manifests of (name, hash) entries.

A collection is stored as a hash sequence whose first hash names a metadata
blob carrying the entry names; the remaining hashes are the entries' blobs,
in collection order.
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Set, Tuple
import logging

import msgpack

from .content_addressing import Hash, BlobFormat, encode_hash_seq, decode_hash_seq
from .errors import DuplicateNameError, BlobShareError, InvalidPathError
from .paths import SEPARATOR, validate_name

logger = logging.getLogger(__name__)


COLLECTION_HEADER = "CollectionV0."


@dataclass(frozen=True)
class ManifestEntry:
    """One named blob in a collection."""
    name: str
    hash: Hash

    def __iter__(self):
        yield self.name
        yield self.hash


class Collection:
    """
    Ordered, name-unique manifest.

    Entries passed to the constructor are sorted by name; entries added with
    ``push`` keep their insertion order. That order is the one used for
    storage and for export. Duplicate names raise ``DuplicateNameError``.
    """

    def __init__(self, entries: Iterable[Tuple[str, Hash]] = ()):
        self._entries: List[ManifestEntry] = []
        self._names: Set[str] = set()
        self._dirs: Set[str] = set()
        for name, blob_hash in sorted(entries, key=lambda e: e[0]):
            self.push(name, blob_hash)

    @classmethod
    def _from_stored(cls, entries: Iterable[Tuple[str, Hash]]) -> "Collection":
        """Rebuild a collection without re-sorting."""
        collection = cls()
        for name, blob_hash in entries:
            collection.push(name, blob_hash)
        return collection

    def push(self, name: str, blob_hash: Hash) -> None:
        """
        Append an entry.

        Raises:
            InvalidPathError: If the name is not a valid relative manifest
                name, or is used both as a file and as a directory
            DuplicateNameError: If the name is already present
        """
        validate_name(name)
        if name in self._names:
            raise DuplicateNameError(name)
        parts = name.split(SEPARATOR)
        ancestors = [SEPARATOR.join(parts[:i]) for i in range(1, len(parts))]
        if name in self._dirs or any(a in self._names for a in ancestors):
            raise InvalidPathError(f"entry {name!r} clashes with a file/directory of another entry")
        self._names.add(name)
        self._dirs.update(ancestors)
        self._entries.append(ManifestEntry(name, blob_hash))

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Collection):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"Collection({len(self._entries)} entries)"

    @property
    def names(self) -> List[str]:
        return [e.name for e in self._entries]

    @property
    def hashes(self) -> List[Hash]:
        return [e.hash for e in self._entries]

    def to_meta_bytes(self) -> bytes:
        """Serialize the metadata blob (header + names)."""
        return msgpack.packb({"header": COLLECTION_HEADER, "names": self.names})

    def to_blobs(self) -> Tuple[bytes, List[Hash]]:
        """
        Serialize to (metadata blob, entry hashes).

        The hash sequence blob is ``[hash(meta)] + entry hashes``.
        """
        return self.to_meta_bytes(), self.hashes

    def store(self, store):
        """
        Persist the collection into a blob store.

        Args:
            store: LocalBlobStore (or compatible)

        Returns:
            TempTag pinning the collection's hash sequence. The caller owns it.
        """
        meta_bytes, hashes = self.to_blobs()
        meta_tag = store.add_bytes(meta_bytes)
        try:
            seq = encode_hash_seq([meta_tag.hash] + hashes)
            seq_tag = store.add_bytes(seq, BlobFormat.HASH_SEQ)
        finally:
            # meta blob is reachable from the hash sequence from here on
            meta_tag.release()
        logger.debug(f"Stored collection {seq_tag.hash.hex[:16]}... with {len(self)} entries")
        return seq_tag

    @classmethod
    def load(cls, blob_hash: Hash, store) -> "Collection":
        """
        Load a stored collection.

        Args:
            blob_hash: Hash of the collection's hash sequence
            store: Blob store holding the sequence, meta blob and entries

        Returns:
            Collection in stored order

        Raises:
            BlobShareError: If the stored data is not a valid collection
        """
        try:
            hashes = decode_hash_seq(store.get_bytes(blob_hash))
        except ValueError as e:
            raise BlobShareError(f"blob {blob_hash} is not a hash sequence: {e}") from e
        if not hashes:
            raise BlobShareError(f"hash sequence {blob_hash} is empty, expected collection metadata")
        try:
            meta = msgpack.unpackb(store.get_bytes(hashes[0]))
        except (msgpack.UnpackException, ValueError):
            meta = None
        if not isinstance(meta, dict) or meta.get("header") != COLLECTION_HEADER:
            raise BlobShareError(f"blob {hashes[0]} is not collection metadata")
        names = meta.get("names", [])
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise InvalidPathError(f"collection metadata {hashes[0]} has malformed entry names")
        if len(names) != len(hashes) - 1:
            raise BlobShareError(
                f"collection metadata lists {len(names)} names for {len(hashes) - 1} blobs"
            )
        return cls._from_stored(zip(names, hashes[1:]))
