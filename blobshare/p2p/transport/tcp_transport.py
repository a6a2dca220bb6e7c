"""
TCP Network Transport Layer

Provides authenticated, framed connections between blobshare nodes.

Features:
- Message framing: [type:1byte][length:4bytes][payload:N bytes]
- msgpack payloads
- Protocol identifiers negotiated in a HELLO handshake, one handler per
  protocol (blobs, tracker, ...)
- Server authentication: the accepting node signs the client's nonce, the
  client checks the signature against the node ID it meant to reach
- Graceful shutdown: stop accepting, let in-flight connections finish within
  a grace period, then close the rest
"""

import asyncio
import os
import socket
import struct
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union
import itertools
import logging

import msgpack

from blobshare.core.errors import ConnectFailedError
from blobshare.p2p.node import NodeAddr, NodeIdentity, split_host_port, verify_signature

logger = logging.getLogger(__name__)


# Transport constants
MESSAGE_SIZE_LIMIT = 10 * 1024 * 1024  # 10MB max message size
CONNECTION_TIMEOUT = 10  # Connection attempt timeout
HANDSHAKE_TIMEOUT = 10
NONCE_SIZE = 16
HEADER = struct.Struct(">BI")
HANDSHAKE_CONTEXT = b"blobshare-hello-v0"


class MessageType(Enum):
    """Types of P2P messages."""

    HELLO = 0x01
    HELLO_ACK = 0x02
    ERROR = 0x03
    GET_REQUEST = 0x10
    BLOB_HEADER = 0x11
    BLOB_DATA = 0x12
    BLOB_END = 0x13
    NOT_FOUND = 0x14
    ANNOUNCE = 0x20
    ANNOUNCE_ACK = 0x21
    QUERY = 0x22
    QUERY_RESPONSE = 0x23


@dataclass
class Message:
    """
    P2P network message with framing.

    Format: [type:1byte][length:4bytes][payload:N bytes]
    """

    msg_type: MessageType
    payload: bytes = b""

    @classmethod
    def pack(cls, msg_type: MessageType, body: Any = None) -> "Message":
        """Build a message with a msgpack-encoded body."""
        return cls(msg_type, msgpack.packb(body) if body is not None else b"")

    def unpack(self) -> Any:
        """Decode the msgpack body (None for an empty payload)."""
        if not self.payload:
            return None
        try:
            return msgpack.unpackb(self.payload)
        except (msgpack.UnpackException, ValueError) as e:
            raise ValueError(f"Malformed {self.msg_type.name} body: {e}") from e

    def to_bytes(self) -> bytes:
        """Serialize message to wire format."""
        return HEADER.pack(self.msg_type.value, len(self.payload)) + self.payload

    @staticmethod
    def from_bytes(data: bytes) -> "Message":
        """Deserialize message from wire format."""
        if len(data) < HEADER.size:
            raise ValueError("Message too short")

        msg_type_val, payload_length = HEADER.unpack(data[:HEADER.size])

        if payload_length > MESSAGE_SIZE_LIMIT:
            raise ValueError(f"Message too large: {payload_length} bytes")

        if len(data) < HEADER.size + payload_length:
            raise ValueError("Incomplete message")

        payload = data[HEADER.size:HEADER.size + payload_length]
        return Message(msg_type=MessageType(msg_type_val), payload=payload)


class Connection:
    """
    An open, authenticated connection to a peer for one protocol.

    ``recv`` raises ``asyncio.IncompleteReadError`` when the peer closes.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        remote_node_id: str,
        alpn: str,
        connection_id: int,
    ):
        self.reader = reader
        self.writer = writer
        self.remote_node_id = remote_node_id
        self.alpn = alpn
        self.connection_id = connection_id

        self.connected_at = time.time()
        self.bytes_sent = 0
        self.bytes_received = 0

    async def send(self, message: Message):
        data = message.to_bytes()
        self.writer.write(data)
        await self.writer.drain()
        self.bytes_sent += len(data)

    async def recv(self) -> Message:
        header = await self.reader.readexactly(HEADER.size)
        msg_type_val, payload_length = HEADER.unpack(header)
        if payload_length > MESSAGE_SIZE_LIMIT:
            raise ValueError(f"Message too large from {self.remote_node_id[:16]}...")
        payload = await self.reader.readexactly(payload_length)
        self.bytes_received += len(header) + len(payload)
        try:
            msg_type = MessageType(msg_type_val)
        except ValueError:
            raise ValueError(f"Unknown message type {msg_type_val:#04x} from {self.remote_node_id[:16]}...") from None
        return Message(msg_type=msg_type, payload=payload)

    async def request(self, message: Message) -> Message:
        """Send a message and wait for one reply."""
        await self.send(message)
        return await self.recv()

    @property
    def is_closing(self) -> bool:
        return self.writer.is_closing()

    async def close(self):
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def __repr__(self) -> str:
        return f"Connection(#{self.connection_id} {self.alpn} {self.remote_node_id[:16]}...)"


ProtocolHandler = Callable[[Connection], Awaitable[None]]


def _handshake_message(nonce: bytes, alpn: str) -> bytes:
    return HANDSHAKE_CONTEXT + nonce + alpn.encode()


class Endpoint:
    """
    Local network endpoint of a node.

    Accepts connections for registered protocols and dials other nodes.
    """

    def __init__(
        self,
        identity: NodeIdentity,
        listen_host: str = "0.0.0.0",
        listen_port: int = 0,
    ):
        """
        Initialize endpoint.

        Args:
            identity: Local node identity (signs handshakes)
            listen_host: Host to listen on
            listen_port: Port to listen on (0 picks a free port)
        """
        self.identity = identity
        self.listen_host = listen_host
        self.listen_port = listen_port

        self.handlers: Dict[str, ProtocolHandler] = {}
        self.address_book: Dict[str, NodeAddr] = {}

        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Set[Connection] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._ids = itertools.count(1)

        self.stats = {
            "connections_accepted": 0,
            "connections_initiated": 0,
            "connections_failed": 0,
            "handshakes_rejected": 0,
        }

    @property
    def node_id(self) -> str:
        return self.identity.node_id

    def accept(self, alpn: str, handler: ProtocolHandler):
        """
        Register a protocol handler.

        Args:
            alpn: Protocol identifier
            handler: Coroutine function called with each accepted Connection
        """
        self.handlers[alpn] = handler
        logger.debug(f"Registered handler for {alpn}")

    def add_node_addr(self, addr: NodeAddr):
        """Remember dialing addresses for a node."""
        known = self.address_book.get(addr.node_id)
        addresses = addr.addresses
        if known:
            addresses = tuple(dict.fromkeys(addr.addresses + known.addresses))
        self.address_book[addr.node_id] = NodeAddr(addr.node_id, addresses)

    async def bind(self):
        """Start listening for incoming connections."""
        self._server = await asyncio.start_server(
            self._on_client, self.listen_host, self.listen_port
        )
        self.listen_port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Endpoint {self.node_id[:16]}... listening on {self.listen_host}:{self.listen_port}")

    def node_addr(self) -> NodeAddr:
        """Our own dialable address."""
        if self.listen_host in ("0.0.0.0", ""):
            hosts = ["127.0.0.1"]
            try:
                local_ip = socket.gethostbyname(socket.gethostname())
                if local_ip not in hosts:
                    hosts.insert(0, local_ip)
            except OSError:
                pass
        else:
            hosts = [self.listen_host]
        return NodeAddr(self.node_id, tuple(f"{h}:{self.listen_port}" for h in hosts))

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        task = asyncio.current_task()
        self._tasks.add(task)
        connection = None
        try:
            connection = await asyncio.wait_for(self._server_handshake(reader, writer), HANDSHAKE_TIMEOUT)
            if connection is None:
                return
            self.stats["connections_accepted"] += 1
            self._connections.add(connection)
            await self.handlers[connection.alpn](connection)
        except (asyncio.IncompleteReadError, ConnectionError):
            logger.debug("Connection closed by peer")
        except asyncio.TimeoutError:
            logger.warning("Handshake timed out")
        except Exception:
            logger.exception("Error handling incoming connection")
        finally:
            if connection is not None:
                self._connections.discard(connection)
                await connection.close()
            elif not writer.is_closing():
                writer.close()
            self._tasks.discard(task)

    async def _server_handshake(self, reader, writer) -> Optional[Connection]:
        hello = Connection(reader, writer, "", "", 0)
        message = await hello.recv()
        body = message.unpack() if message.msg_type is MessageType.HELLO else None
        if not isinstance(body, dict) or "alpn" not in body or "nonce" not in body:
            self.stats["handshakes_rejected"] += 1
            await hello.send(Message.pack(MessageType.ERROR, {"reason": "expected HELLO"}))
            return None
        alpn = body["alpn"]
        if alpn not in self.handlers:
            self.stats["handshakes_rejected"] += 1
            logger.warning(f"Rejected connection for unknown protocol {alpn!r}")
            await hello.send(Message.pack(MessageType.ERROR, {"reason": f"unsupported protocol {alpn}"}))
            return None
        signature = self.identity.sign(_handshake_message(body["nonce"], alpn))
        await hello.send(Message.pack(MessageType.HELLO_ACK, {
            "node_id": self.node_id,
            "signature": signature,
        }))
        return Connection(reader, writer, str(body.get("node_id", "")), alpn, next(self._ids))

    async def connect(self, addr: Union[NodeAddr, str], alpn: str) -> Connection:
        """
        Open an authenticated connection to a node.

        Args:
            addr: NodeAddr, or a node ID present in the address book
            alpn: Protocol identifier

        Returns:
            Open Connection

        Raises:
            ConnectFailedError: If no address works or the remote node can't
                prove it holds ``addr.node_id``
        """
        if isinstance(addr, str):
            addr = NodeAddr(addr)
        known = self.address_book.get(addr.node_id)
        addresses = addr.addresses + (known.addresses if known else ())
        if not addresses:
            raise ConnectFailedError(f"no known address for node {addr.node_id[:16]}...")

        last_error: Optional[BaseException] = None
        for address in dict.fromkeys(addresses):
            try:
                host, port = split_host_port(address)
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(host, port),
                    timeout=CONNECTION_TIMEOUT
                )
            except (OSError, asyncio.TimeoutError) as e:
                last_error = e
                logger.debug(f"Failed to reach {addr.node_id[:16]}... at {address}: {e}")
                continue
            try:
                connection = await asyncio.wait_for(
                    self._client_handshake(reader, writer, addr.node_id, alpn),
                    timeout=HANDSHAKE_TIMEOUT
                )
            except (asyncio.TimeoutError, asyncio.IncompleteReadError, OSError, ValueError) as e:
                writer.close()
                self.stats["connections_failed"] += 1
                raise ConnectFailedError(f"handshake with {addr.node_id[:16]}... at {address} failed: {e!r}") from e
            except BaseException:
                writer.close()
                raise
            self.stats["connections_initiated"] += 1
            logger.debug(f"Connected to {addr.node_id[:16]}... at {address} for {alpn}")
            return connection

        self.stats["connections_failed"] += 1
        raise ConnectFailedError(f"failed to connect to {addr.node_id[:16]}...: {last_error}")

    async def _client_handshake(self, reader, writer, node_id: str, alpn: str) -> Connection:
        connection = Connection(reader, writer, node_id, alpn, next(self._ids))
        nonce = os.urandom(NONCE_SIZE)
        try:
            reply = await connection.request(Message.pack(MessageType.HELLO, {
                "alpn": alpn,
                "node_id": self.node_id,
                "nonce": nonce,
            }))
        except (asyncio.IncompleteReadError, ConnectionError) as e:
            raise ConnectFailedError(f"handshake with {node_id[:16]}... failed: {e}") from e

        body = reply.unpack()
        if reply.msg_type is MessageType.ERROR:
            reason = body.get("reason") if isinstance(body, dict) else body
            raise ConnectFailedError(f"{node_id[:16]}... refused connection: {reason}")
        if reply.msg_type is not MessageType.HELLO_ACK or not isinstance(body, dict):
            raise ConnectFailedError(f"unexpected handshake reply {reply.msg_type.name}")
        if body.get("node_id") != node_id:
            raise ConnectFailedError(
                f"expected node {node_id[:16]}..., reached {str(body.get('node_id'))[:16]}..."
            )
        if not verify_signature(node_id, _handshake_message(nonce, alpn), body.get("signature", b"")):
            raise ConnectFailedError(f"node {node_id[:16]}... failed to prove its identity")
        return connection

    def get_stats(self) -> Dict:
        """Get transport statistics."""
        return {
            **self.stats,
            "active_connections": len(self._connections),
        }

    async def close(self, grace: float = 5.0):
        """
        Shut down the endpoint.

        Stops accepting, waits up to ``grace`` seconds for connection
        handlers to finish, then closes whatever is still open.
        """
        logger.info("Shutting down endpoint...")
        if self._server is not None:
            self._server.close()

        pending: List[asyncio.Task] = list(self._tasks)
        if pending and grace > 0:
            await asyncio.wait(pending, timeout=grace)

        for connection in list(self._connections):
            await connection.close()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._server is not None:
            await self._server.wait_closed()
            self._server = None
        logger.info("Endpoint shutdown complete")
