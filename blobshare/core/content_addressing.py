"""
Content addressing for blobshare.

Every blob is identified by the BLAKE2b-256 digest of its bytes. A content
identifier pairs that digest with a format tag: a RAW blob is opaque bytes,
a HASH_SEQ blob is a concatenation of 32-byte hashes (collections are stored
this way).
"""

import hashlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Tuple
import logging

from .errors import InvalidTicketError

logger = logging.getLogger(__name__)


HASH_SIZE = 32  # 256-bit digests
READ_CHUNK_SIZE = 256 * 1024  # 256KB reads when hashing files
HASH_SEQ_MARKER = "hashseq"


class BlobFormat(Enum):
    """Format tag of a content identifier."""
    RAW = "raw"
    HASH_SEQ = "hashseq"


@dataclass(frozen=True, order=True)
class Hash:
    """256-bit content digest."""
    value: bytes

    def __post_init__(self):
        if len(self.value) != HASH_SIZE:
            raise ValueError(f"hash must be {HASH_SIZE} bytes, got {len(self.value)}")

    @property
    def hex(self) -> str:
        """Get hex representation of hash."""
        return self.value.hex()

    @classmethod
    def from_hex(cls, text: str) -> "Hash":
        """Parse the 64-character lower-case hex form."""
        if len(text) != HASH_SIZE * 2 or text != text.lower():
            raise InvalidTicketError(f"invalid hash: {text!r}")
        try:
            return cls(bytes.fromhex(text))
        except ValueError as e:
            raise InvalidTicketError(f"invalid hash: {text!r}") from e

    def __str__(self) -> str:
        return self.hex

    def __repr__(self) -> str:
        return f"Hash({self.hex[:16]}...)"


@dataclass(frozen=True)
class HashAndFormat:
    """
    Content identifier: a hash plus the format of the blob it names.

    String form is ``<hex>`` for raw blobs and ``<hex>:hashseq`` for hash
    sequences. ``parse(str(x)) == x`` always holds.
    """
    hash: Hash
    format: BlobFormat = BlobFormat.RAW

    @classmethod
    def raw(cls, blob_hash: Hash) -> "HashAndFormat":
        return cls(blob_hash, BlobFormat.RAW)

    @classmethod
    def hash_seq(cls, blob_hash: Hash) -> "HashAndFormat":
        return cls(blob_hash, BlobFormat.HASH_SEQ)

    @property
    def is_hash_seq(self) -> bool:
        return self.format is BlobFormat.HASH_SEQ

    @classmethod
    def parse(cls, text: str) -> "HashAndFormat":
        """
        Parse a content identifier string.

        Args:
            text: ``<hex>`` or ``<hex>:hashseq``

        Returns:
            Parsed HashAndFormat

        Raises:
            InvalidTicketError: If the string is malformed
        """
        hex_part, sep, marker = text.partition(":")
        if not sep:
            return cls(Hash.from_hex(hex_part), BlobFormat.RAW)
        if marker != HASH_SEQ_MARKER:
            raise InvalidTicketError(f"unknown format marker: {marker!r}")
        return cls(Hash.from_hex(hex_part), BlobFormat.HASH_SEQ)

    def __str__(self) -> str:
        if self.format is BlobFormat.HASH_SEQ:
            return f"{self.hash.hex}:{HASH_SEQ_MARKER}"
        return self.hash.hex


class ContentAddressingEngine:
    """
    Computes and verifies content digests.

    Uses BLAKE2b with a 32-byte digest so that every identifier is a
    256-bit value regardless of the blob's size.
    """

    def __init__(self):
        """Initialize content addressing engine."""
        self.hash_algorithm = "blake2b-256"
        logger.debug(f"Initialized content addressing with {self.hash_algorithm}")

    @staticmethod
    def hasher():
        """Return a fresh incremental hasher."""
        return hashlib.blake2b(digest_size=HASH_SIZE)

    def compute_hash(self, data: bytes) -> Hash:
        """
        Compute content hash for data.

        Args:
            data: Raw data bytes

        Returns:
            Hash of the data
        """
        h = self.hasher()
        h.update(data)
        return Hash(h.digest())

    def compute_file_hash(self, path: Path) -> Tuple[Hash, int]:
        """
        Stream a file through the hasher.

        Args:
            path: File to hash

        Returns:
            (hash, size in bytes)
        """
        h = self.hasher()
        size = 0
        with open(path, "rb") as f:
            while True:
                chunk = f.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                h.update(chunk)
                size += len(chunk)
        return Hash(h.digest()), size

    def verify_content(self, data: bytes, expected: Hash) -> bool:
        """
        Verify data matches a hash.

        Args:
            data: Data to verify
            expected: Expected hash

        Returns:
            True if data matches
        """
        return self.compute_hash(data) == expected


def encode_hash_seq(hashes: Iterable[Hash]) -> bytes:
    """Concatenate hashes into a hash-sequence blob."""
    return b"".join(h.value for h in hashes)


def decode_hash_seq(data: bytes) -> List[Hash]:
    """
    Split a hash-sequence blob into its hashes.

    Raises:
        ValueError: If the blob length is not a multiple of the hash size
    """
    if len(data) % HASH_SIZE != 0:
        raise ValueError(f"hash sequence length {len(data)} is not a multiple of {HASH_SIZE}")
    return [Hash(data[i:i + HASH_SIZE]) for i in range(0, len(data), HASH_SIZE)]
