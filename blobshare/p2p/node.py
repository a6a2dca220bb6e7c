"""
P2P Node identity and addressing.

Each blobshare node has:
- A secret Ed25519 key (from BLOBSHARE_SECRET or freshly generated)
- A node ID: hex of the raw 32-byte public key
- One or more network addresses (host:port)

Node IDs are public keys, so any signature can be checked against the
node ID it claims to come from without a key exchange.
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple
import logging

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from blobshare.core.errors import InvalidTicketError

logger = logging.getLogger(__name__)


SECRET_ENV_VAR = "BLOBSHARE_SECRET"
NODE_ID_SIZE = 32


def _raw_public_bytes(public_key: ed25519.Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def validate_node_id(node_id: str) -> str:
    """Check a node ID is 64 lower-case hex characters."""
    try:
        raw = bytes.fromhex(node_id)
    except ValueError:
        raw = b""
    if len(raw) != NODE_ID_SIZE or node_id != node_id.lower():
        raise InvalidTicketError(f"invalid node id: {node_id!r}")
    return node_id


class NodeIdentity:
    """Ed25519 keypair of the local node."""

    def __init__(self, private_key: Optional[ed25519.Ed25519PrivateKey] = None):
        self.private_key = private_key or ed25519.Ed25519PrivateKey.generate()
        self.public_key = self.private_key.public_key()
        self.node_id = _raw_public_bytes(self.public_key).hex()

    @classmethod
    def generate(cls) -> "NodeIdentity":
        return cls(ed25519.Ed25519PrivateKey.generate())

    @classmethod
    def from_secret_hex(cls, secret: str) -> "NodeIdentity":
        """
        Load an identity from the hex form of the raw 32-byte secret key.

        Raises:
            InvalidTicketError: If the secret is malformed
        """
        try:
            raw = bytes.fromhex(secret.strip())
            private_key = ed25519.Ed25519PrivateKey.from_private_bytes(raw)
        except ValueError as e:
            raise InvalidTicketError("Invalid secret key format") from e
        return cls(private_key)

    def secret_hex(self) -> str:
        """Hex form of the raw secret key, suitable for BLOBSHARE_SECRET."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        ).hex()

    def sign(self, message: bytes) -> bytes:
        """Sign a message with the node's private key."""
        return self.private_key.sign(message)

    def __repr__(self) -> str:
        return f"NodeIdentity({self.node_id[:16]}...)"


def verify_signature(node_id: str, message: bytes, signature: bytes) -> bool:
    """Verify a signature made by the node with ID ``node_id``."""
    try:
        public_key = ed25519.Ed25519PublicKey.from_public_bytes(bytes.fromhex(node_id))
        public_key.verify(signature, message)
        return True
    except (InvalidSignature, TypeError, ValueError):
        return False


def get_or_generate_identity(environ=None) -> Tuple[NodeIdentity, bool]:
    """
    Load the node identity from BLOBSHARE_SECRET or generate a new one.

    Args:
        environ: Mapping to read from (default: os.environ)

    Returns:
        (identity, generated) where ``generated`` is True for a fresh key
    """
    environ = os.environ if environ is None else environ
    secret = environ.get(SECRET_ENV_VAR)
    if secret:
        logger.info("Loaded node identity from environment")
        return NodeIdentity.from_secret_hex(secret), False
    logger.info("Generated new node identity")
    return NodeIdentity.generate(), True


@dataclass(frozen=True)
class NodeAddr:
    """A node ID plus the addresses it can be dialed at."""

    node_id: str
    addresses: Tuple[str, ...] = ()

    def __post_init__(self):
        validate_node_id(self.node_id)
        object.__setattr__(self, "addresses", tuple(self.addresses))

    @classmethod
    def parse(cls, text: str) -> "NodeAddr":
        """
        Parse ``<node_id>@<host:port>[,<host:port>...]`` (or a bare node ID).

        Raises:
            InvalidTicketError: If the string is malformed
        """
        node_id, _, addrs = text.strip().partition("@")
        addresses = tuple(a for a in addrs.split(",") if a)
        for address in addresses:
            split_host_port(address)
        return cls(node_id, addresses)

    def __str__(self) -> str:
        if not self.addresses:
            return self.node_id
        return f"{self.node_id}@{','.join(self.addresses)}"

    def to_dict(self) -> dict:
        return {"node_id": self.node_id, "addresses": list(self.addresses)}

    @classmethod
    def from_dict(cls, data: dict) -> "NodeAddr":
        return cls(data["node_id"], tuple(data.get("addresses", ())))


def split_host_port(address: str) -> Tuple[str, int]:
    """Split ``host:port`` (IPv6 hosts in brackets) into its parts."""
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise InvalidTicketError(f"invalid address: {address!r}")
    return host.strip("[]"), int(port)

