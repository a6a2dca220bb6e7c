"""
Tracker wire contract.

A provider tells a tracker "I have this content" with a signed
announcement; a receiver asks the tracker which hosts announced a given
content. Only the client side lives here; the tracker itself is an
external service.

Messages (over protocol ``blobshare/tracker/0``):
- ANNOUNCE {signed announcement bytes} -> ANNOUNCE_ACK | ERROR
- QUERY {content, kind} -> QUERY_RESPONSE {hosts: [{node_id, addresses}]}
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple
import logging

import msgpack

from blobshare.core.content_addressing import HashAndFormat
from blobshare.core.errors import InvalidTicketError, SendFailedError, SignatureInvalidError
from blobshare.p2p.node import NodeAddr, NodeIdentity, validate_node_id, verify_signature
from blobshare.p2p.transport import Connection, Message, MessageType

logger = logging.getLogger(__name__)


TRACKER_ALPN = "blobshare/tracker/0"


class AnnounceKind(Enum):
    """Whether the host has all of the content or only part of it."""
    COMPLETE = "complete"
    PARTIAL = "partial"


def absolute_time_now() -> int:
    """Wall-clock time in microseconds since the Unix epoch."""
    return time.time_ns() // 1000


@dataclass(frozen=True)
class Announcement:
    """Unsigned "host has content" record."""

    host: str
    content: HashAndFormat
    kind: AnnounceKind
    timestamp: int
    addresses: Tuple[str, ...] = field(default=())

    def __post_init__(self):
        validate_node_id(self.host)
        object.__setattr__(self, "addresses", tuple(self.addresses))

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "content": str(self.content),
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "addresses": list(self.addresses),
        }

    def signing_bytes(self) -> bytes:
        """Canonical bytes covered by the signature."""
        return msgpack.packb(self.to_dict())

    @staticmethod
    def from_dict(d: dict) -> "Announcement":
        return Announcement(
            host=d["host"],
            content=HashAndFormat.parse(d["content"]),
            kind=AnnounceKind(d["kind"]),
            timestamp=int(d["timestamp"]),
            addresses=tuple(d.get("addresses", ())),
        )


@dataclass(frozen=True)
class SignedAnnounce:
    """Announcement plus the host's Ed25519 signature over it."""

    announce: Announcement
    signature: bytes

    @classmethod
    def sign(cls, announce: Announcement, identity: NodeIdentity) -> "SignedAnnounce":
        """
        Sign an announcement.

        Raises:
            ValueError: If ``identity`` is not the announcement's host
        """
        if identity.node_id != announce.host:
            raise ValueError("announcement host does not match signing identity")
        return cls(announce, identity.sign(announce.signing_bytes()))

    def verify(self):
        """
        Check the signature against the declared host.

        Raises:
            SignatureInvalidError: If the signature does not verify
        """
        if not verify_signature(self.announce.host, self.announce.signing_bytes(), self.signature):
            raise SignatureInvalidError(
                f"announcement signature invalid for host {self.announce.host[:16]}..."
            )

    def to_bytes(self) -> bytes:
        """Serialize for network transmission."""
        return msgpack.packb({**self.announce.to_dict(), "signature": self.signature})

    @staticmethod
    def from_bytes(data: bytes) -> "SignedAnnounce":
        """Deserialize. Does not verify; call ``verify``."""
        try:
            d = msgpack.unpackb(data)
            return SignedAnnounce(Announcement.from_dict(d), bytes(d["signature"]))
        except InvalidTicketError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidTicketError(f"malformed announcement: {e}") from e


async def announce(connection: Connection, signed: SignedAnnounce):
    """
    Send a signed announcement over an open tracker connection.

    Raises:
        SendFailedError: If the exchange fails or the tracker rejects it
    """
    try:
        reply = await connection.request(Message(MessageType.ANNOUNCE, signed.to_bytes()))
        if reply.msg_type is MessageType.ANNOUNCE_ACK:
            return
        body = reply.unpack()
    except (OSError, EOFError, ValueError) as e:
        raise SendFailedError(f"failed to send announcement: {e}") from e
    reason = body.get("reason") if isinstance(body, dict) else reply.msg_type.name
    raise SendFailedError(f"tracker rejected announcement: {reason}")


async def query(
    connection: Connection,
    content: HashAndFormat,
    kind: AnnounceKind = AnnounceKind.COMPLETE,
) -> List[NodeAddr]:
    """
    Ask a tracker which hosts announced ``content``.

    Returns:
        Host addresses, in the order the tracker returned them

    Raises:
        SendFailedError: If the exchange fails or the reply is malformed
    """
    try:
        reply = await connection.request(Message.pack(MessageType.QUERY, {
            "content": str(content),
            "kind": kind.value,
        }))
        body = reply.unpack()
    except (OSError, EOFError, ValueError) as e:
        raise SendFailedError(f"tracker query failed: {e}") from e
    if reply.msg_type is not MessageType.QUERY_RESPONSE or not isinstance(body, dict) \
            or not isinstance(body.get("hosts", []), list):
        raise SendFailedError(f"unexpected tracker reply {reply.msg_type.name}")
    hosts = []
    for entry in body.get("hosts", []):
        try:
            hosts.append(NodeAddr.from_dict(entry))
        except (InvalidTicketError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed host entry from tracker: {e}")
    return hosts
