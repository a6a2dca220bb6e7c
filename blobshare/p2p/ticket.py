"""
Blob tickets.

A ticket bundles a provider's address with a content identifier so a
receiver can fetch content without any other coordination. String form is
``blob`` followed by unpadded lower-case base32 of a msgpack map.
"""

import base64
from dataclasses import dataclass

import msgpack

from blobshare.core.content_addressing import BlobFormat, Hash, HashAndFormat
from blobshare.core.errors import InvalidTicketError
from .node import NodeAddr

TICKET_PREFIX = "blob"


@dataclass(frozen=True)
class BlobTicket:
    """Provider address plus content identifier."""

    node: NodeAddr
    content: HashAndFormat

    @property
    def hash(self) -> Hash:
        return self.content.hash

    @property
    def format(self) -> BlobFormat:
        return self.content.format

    def to_bytes(self) -> bytes:
        return msgpack.packb({
            "node": self.node.node_id,
            "addrs": list(self.node.addresses),
            "hash": self.content.hash.value,
            "format": self.content.format.value,
        })

    @classmethod
    def from_bytes(cls, data: bytes) -> "BlobTicket":
        try:
            d = msgpack.unpackb(data)
            node = NodeAddr(d["node"], tuple(d.get("addrs", ())))
            content = HashAndFormat(Hash(d["hash"]), BlobFormat(d["format"]))
        except InvalidTicketError:
            raise
        except (ValueError, KeyError, TypeError, msgpack.ExtraData) as e:
            raise InvalidTicketError(f"malformed ticket payload: {e}") from e
        return cls(node, content)

    def __str__(self) -> str:
        encoded = base64.b32encode(self.to_bytes()).decode("ascii")
        return TICKET_PREFIX + encoded.rstrip("=").lower()

    @classmethod
    def parse(cls, text: str) -> "BlobTicket":
        """
        Parse the string form of a ticket.

        Raises:
            InvalidTicketError: If the string is not a valid ticket
        """
        text = text.strip()
        if not text.startswith(TICKET_PREFIX):
            raise InvalidTicketError("ticket must start with 'blob'")
        body = text[len(TICKET_PREFIX):].upper()
        body += "=" * (-len(body) % 8)
        try:
            data = base64.b32decode(body)
        except ValueError as e:
            raise InvalidTicketError(f"invalid ticket encoding: {e}") from e
        return cls.from_bytes(data)
