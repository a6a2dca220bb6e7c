"""
Shared test helpers: an in-process tracker and a blob provider.
"""

import asyncio
from pathlib import Path
from typing import List, Optional

from blobshare.backends.local import LocalBlobStore
from blobshare.core.content_addressing import HashAndFormat
from blobshare.core.errors import InvalidTicketError, SignatureInvalidError
from blobshare.core.importer import import_path
from blobshare.p2p.discovery.tracker import TRACKER_ALPN, AnnounceKind, SignedAnnounce
from blobshare.p2p.events import EventSink
from blobshare.p2p.network.protocol import BLOBS_ALPN, BlobsProtocol
from blobshare.p2p.node import NodeAddr, NodeIdentity
from blobshare.p2p.transport import Connection, Endpoint, Message, MessageType


class TrackerStub:
    """
    Minimal tracker speaking the tracker wire contract.

    Usage:
        async with TrackerStub() as tracker:
            ... tracker.addr ...
    """

    def __init__(self, reject_all: bool = False):
        self.identity = NodeIdentity.generate()
        self.endpoint = Endpoint(self.identity, "127.0.0.1", 0)
        self.endpoint.accept(TRACKER_ALPN, self.handle)
        self.reject_all = reject_all
        self.announcements: List[SignedAnnounce] = []
        self.rejected = 0

    @property
    def addr(self) -> NodeAddr:
        return self.endpoint.node_addr()

    async def __aenter__(self):
        await self.endpoint.bind()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.endpoint.close(grace=1)

    def hosts_for(self, content: HashAndFormat, kind: AnnounceKind) -> List[NodeAddr]:
        latest = {}
        for signed in self.announcements:
            record = signed.announce
            if record.content == content and record.kind is kind:
                latest[record.host] = record
        return [NodeAddr(r.host, r.addresses) for r in latest.values()]

    async def handle(self, connection: Connection):
        while True:
            try:
                message = await connection.recv()
            except asyncio.IncompleteReadError:
                return

            if message.msg_type is MessageType.ANNOUNCE:
                try:
                    signed = SignedAnnounce.from_bytes(message.payload)
                    signed.verify()
                    if self.reject_all:
                        raise SignatureInvalidError("rejected by test tracker")
                except (InvalidTicketError, SignatureInvalidError) as e:
                    self.rejected += 1
                    await connection.send(Message.pack(MessageType.ERROR, {"reason": str(e)}))
                    continue
                self.announcements.append(signed)
                await connection.send(Message(MessageType.ANNOUNCE_ACK))

            elif message.msg_type is MessageType.QUERY:
                body = message.unpack()
                content = HashAndFormat.parse(body["content"])
                hosts = self.hosts_for(content, AnnounceKind(body["kind"]))
                await connection.send(Message.pack(MessageType.QUERY_RESPONSE, {
                    "hosts": [host.to_dict() for host in hosts],
                }))

            else:
                await connection.send(Message.pack(MessageType.ERROR, {"reason": "unsupported"}))
                return


class Provider:
    """
    A node serving one imported file or directory.

    Usage:
        async with Provider(store_dir, source_path) as provider:
            ... provider.addr, provider.content, provider.events ...
    """

    def __init__(self, store_dir: Path, source: Optional[Path] = None):
        self.identity = NodeIdentity.generate()
        self.store = LocalBlobStore(store_dir)
        self.source = source
        self.events: list = []
        self.sink = EventSink(handler=self.events.append)
        self.endpoint = Endpoint(self.identity, "127.0.0.1", 0)
        self.endpoint.accept(BLOBS_ALPN, BlobsProtocol(self.store, self.sink).handle_connection)
        self.result = None

    @property
    def addr(self) -> NodeAddr:
        return self.endpoint.node_addr()

    @property
    def content(self) -> HashAndFormat:
        return self.result.content

    async def __aenter__(self):
        if self.source is not None:
            self.result = await import_path(self.source, self.store)
        self.sink.start()
        await self.endpoint.bind()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.endpoint.close(grace=1)
        await self.sink.stop()
        if self.result is not None:
            self.result.release()
