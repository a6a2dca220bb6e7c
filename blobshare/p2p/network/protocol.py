"""
Blob Request/Response Protocol

Serves blobs from a local store and fetches them from remote providers.

Exchange (over protocol ``blobshare/blobs/0``, any number per connection):
- GET_REQUEST {hash, offset}
- BLOB_HEADER {size}, BLOB_DATA (raw bytes) ..., BLOB_END
  or NOT_FOUND {hash}

Offsets let a receiver resume an interrupted transfer from its partial file.
"""

import asyncio
import itertools
import time
from typing import Optional
import logging

from blobshare.core.content_addressing import Hash
from blobshare.core.errors import BlobNotFoundError, BlobVerificationError, DownloadError
from blobshare.p2p.events import (
    ClientConnected,
    EventSink,
    GetRequestReceived,
    Other,
    ProviderEvent,
    TransferAborted,
    TransferCompleted,
    TransferProgress,
    TransferStats,
)
from blobshare.p2p.transport import Connection, Message, MessageType

logger = logging.getLogger(__name__)


BLOBS_ALPN = "blobshare/blobs/0"
DATA_CHUNK_SIZE = 64 * 1024  # 64KB per BLOB_DATA frame


class BlobsProtocol:
    """
    Provider side of the blob protocol.

    Register with an endpoint:
        endpoint.accept(BLOBS_ALPN, BlobsProtocol(store, events).handle_connection)
    """

    def __init__(self, store, events: Optional[EventSink] = None):
        """
        Initialize provider.

        Args:
            store: LocalBlobStore to serve from
            events: Sink for transfer events (None disables reporting)
        """
        self.store = store
        self.events = events
        self._request_ids = itertools.count(1)

    async def _emit(self, event: ProviderEvent):
        if self.events is not None:
            await self.events.emit(event)

    async def handle_connection(self, connection: Connection):
        """Serve GET requests until the peer closes the connection."""
        connection_id = connection.connection_id
        await self._emit(ClientConnected(connection_id, connection.remote_node_id))

        while True:
            try:
                message = await connection.recv()
            except asyncio.IncompleteReadError:
                return

            if message.msg_type is not MessageType.GET_REQUEST:
                await self._emit(Other(connection_id, f"unexpected {message.msg_type.name}"))
                await connection.send(Message.pack(MessageType.ERROR, {"reason": "expected GET_REQUEST"}))
                return

            body = message.unpack()
            try:
                blob_hash = Hash(bytes(body["hash"]))
                offset = max(0, int(body.get("offset", 0)))
            except (KeyError, TypeError, ValueError) as e:
                await self._emit(Other(connection_id, "malformed request", {"error": str(e)}))
                await connection.send(Message.pack(MessageType.ERROR, {"reason": "malformed request"}))
                return

            request_id = next(self._request_ids)
            await self._emit(GetRequestReceived(connection_id, request_id, blob_hash, offset))
            await self._send_blob(connection, request_id, blob_hash, offset)

    async def _send_blob(self, connection: Connection, request_id: int, blob_hash: Hash, offset: int):
        connection_id = connection.connection_id
        if not self.store.has(blob_hash):
            await connection.send(Message.pack(MessageType.NOT_FOUND, {"hash": blob_hash.value}))
            await self._emit(TransferAborted(connection_id, request_id))
            return

        size = self.store.size(blob_hash)
        position = min(offset, size)
        start = time.monotonic()
        sent = 0
        try:
            await connection.send(Message.pack(MessageType.BLOB_HEADER, {"size": size}))
            while position < size:
                chunk = self.store.read_range(blob_hash, position, DATA_CHUNK_SIZE)
                if not chunk:
                    raise BlobNotFoundError(blob_hash)
                await connection.send(Message(MessageType.BLOB_DATA, chunk))
                position += len(chunk)
                sent += len(chunk)
                await self._emit(TransferProgress(connection_id, request_id, position))
            await connection.send(Message(MessageType.BLOB_END))
        except (ConnectionError, BlobNotFoundError):
            stats = TransferStats(bytes_sent=sent, duration=time.monotonic() - start)
            await self._emit(TransferAborted(connection_id, request_id, stats))
            raise

        stats = TransferStats(bytes_sent=sent, duration=time.monotonic() - start)
        await self._emit(TransferCompleted(connection_id, request_id, stats))


async def fetch_blob(connection: Connection, store, blob_hash: Hash) -> int:
    """
    Fetch one blob into ``store`` over an open blobs connection.

    Resumes from an existing partial file. The blob only becomes visible in
    the store once its digest has been verified.

    Returns:
        Number of bytes received in this call

    Raises:
        BlobNotFoundError: If the provider doesn't have the blob
        BlobVerificationError: If the received bytes don't match the hash
        DownloadError: If the provider breaks the protocol
    """
    offset = store.partial_size(blob_hash)
    reply = await connection.request(Message.pack(MessageType.GET_REQUEST, {
        "hash": blob_hash.value,
        "offset": offset,
    }))
    if reply.msg_type is MessageType.NOT_FOUND:
        raise BlobNotFoundError(blob_hash, connection.remote_node_id)
    if reply.msg_type is not MessageType.BLOB_HEADER:
        raise DownloadError(f"unexpected reply {reply.msg_type.name} for {blob_hash.hex[:16]}...")
    body = reply.unpack()
    if not isinstance(body, dict) or "size" not in body:
        raise DownloadError(f"malformed BLOB_HEADER for {blob_hash.hex[:16]}...")
    size = int(body["size"])

    received = 0
    with open(store.partial_path(blob_hash), "ab") as partial:
        while True:
            message = await connection.recv()
            if message.msg_type is MessageType.BLOB_END:
                break
            if message.msg_type is not MessageType.BLOB_DATA:
                raise DownloadError(f"unexpected {message.msg_type.name} during transfer")
            partial.write(message.payload)
            received += len(message.payload)

    if offset + received != size:
        store.discard_partial(blob_hash)
        raise BlobVerificationError(
            f"expected {size} bytes for {blob_hash.hex[:16]}..., got {offset + received}"
        )
    store.finalize_partial(blob_hash)
    logger.debug(f"Fetched {blob_hash.hex[:16]}... ({received} bytes, resumed at {offset})")
    return received
