"""
Content discovery tests.
"""

import asyncio
import hashlib
import random
from typing import Optional

import pytest

from blobshare.core.content_addressing import Hash, HashAndFormat
from blobshare.p2p.discovery.announce import AnnounceClient
from blobshare.p2p.discovery.strategy import (
    CombinedDiscovery,
    ContentDiscovery,
    DiscoveryOptions,
    ExplicitDiscovery,
    Shuffled,
    SplitStrategy,
    TrackerDiscovery,
)
from blobshare.p2p.node import NodeAddr, NodeIdentity
from blobshare.p2p.discovery.tracker import TRACKER_ALPN
from blobshare.p2p.transport import Endpoint, Message, MessageType, tcp_transport

from conftest import TrackerStub


CONTENT = HashAndFormat.hash_seq(Hash(hashlib.blake2b(b"discover me", digest_size=32).digest()))


def nodes(count: int):
    return [
        NodeAddr(NodeIdentity.generate().node_id, (f"127.0.0.1:{5000 + i}",))
        for i in range(count)
    ]


async def collect(iterator):
    return [item async for item in iterator]


class RawServer:
    """TCP server that answers the first frame it gets with fixed bytes, or never."""

    def __init__(self, reply: Optional[bytes] = None):
        self.reply = reply
        self.done = asyncio.Event()
        self.server = None

    @property
    def addr(self) -> NodeAddr:
        port = self.server.sockets[0].getsockname()[1]
        return NodeAddr(NodeIdentity.generate().node_id, (f"127.0.0.1:{port}",))

    async def _on_client(self, reader, writer):
        await reader.read(4096)
        if self.reply is not None:
            writer.write(self.reply)
            await writer.drain()
        await self.done.wait()
        writer.close()

    async def __aenter__(self):
        self.server = await asyncio.start_server(self._on_client, "127.0.0.1", 0)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.done.set()
        self.server.close()
        await self.server.wait_closed()


class TestExplicit:
    """Test explicit candidate lists."""

    @pytest.mark.asyncio
    async def test_order_preserved(self):
        providers = nodes(4)
        options = DiscoveryOptions(CONTENT, ExplicitDiscovery(providers))
        assert await collect(options.candidates()) == providers
        assert options.split_strategy is SplitStrategy.NONE

    @pytest.mark.asyncio
    async def test_shuffled_is_a_permutation(self):
        providers = nodes(8)
        source = Shuffled(ExplicitDiscovery(providers), rng=random.Random(7))
        shuffled = await collect(DiscoveryOptions(CONTENT, source).candidates())
        assert sorted(shuffled, key=str) == sorted(providers, key=str)

        orders = set()
        for seed in range(10):
            source = Shuffled(ExplicitDiscovery(providers), rng=random.Random(seed))
            orders.add(tuple(p.node_id for p in await collect(source.find_providers(CONTENT))))
        assert len(orders) > 1

    @pytest.mark.asyncio
    async def test_duplicates_removed(self):
        a, b = nodes(2)
        options = DiscoveryOptions(CONTENT, CombinedDiscovery(ExplicitDiscovery([a, b]), ExplicitDiscovery([a])))
        assert await collect(options.candidates()) == [a, b]

    @pytest.mark.asyncio
    async def test_candidates_not_restartable(self):
        options = DiscoveryOptions(CONTENT, ExplicitDiscovery(nodes(2)))
        candidates = options.candidates()
        assert len(await collect(candidates)) == 2
        assert await collect(candidates) == []
        # a new call gives a fresh iterator
        assert len(await collect(options.candidates())) == 2

    def test_base_class_is_abstract(self):
        with pytest.raises(TypeError):
            ContentDiscovery()


class TestTracker:
    """Test tracker-backed discovery."""

    @pytest.mark.asyncio
    async def test_announced_hosts_returned(self):
        async with TrackerStub() as tracker:
            hosts = []
            for port in (7001, 7002):
                identity = NodeIdentity.generate()
                client = AnnounceClient(
                    Endpoint(identity), identity, CONTENT, tracker.addr,
                    addresses=[f"127.0.0.1:{port}"],
                )
                await client.announce_once()
                hosts.append(NodeAddr(identity.node_id, (f"127.0.0.1:{port}",)))

            me = Endpoint(NodeIdentity.generate())
            found = await collect(TrackerDiscovery(me, [tracker.addr]).find_providers(CONTENT))
            assert found == hosts

            other = HashAndFormat.raw(CONTENT.hash)
            assert await collect(TrackerDiscovery(me, [tracker.addr]).find_providers(other)) == []

    @pytest.mark.asyncio
    async def test_own_node_excluded(self):
        async with TrackerStub() as tracker:
            identity = NodeIdentity.generate()
            endpoint = Endpoint(identity)
            client = AnnounceClient(endpoint, identity, CONTENT, tracker.addr, addresses=["127.0.0.1:7003"])
            await client.announce_once()

            found = await collect(TrackerDiscovery(endpoint, [tracker.addr]).find_providers(CONTENT))
            assert found == []

    @pytest.mark.asyncio
    async def test_unreachable_tracker_yields_nothing(self):
        dead = NodeAddr(NodeIdentity.generate().node_id, ("127.0.0.1:1",))
        me = Endpoint(NodeIdentity.generate())
        assert await collect(TrackerDiscovery(me, [dead]).find_providers(CONTENT)) == []

    @pytest.mark.asyncio
    async def test_unknown_frame_type_skipped(self):
        async with RawServer(b"\xff\x00\x00\x00\x00") as server:
            me = Endpoint(NodeIdentity.generate())
            assert await collect(TrackerDiscovery(me, [server.addr]).find_providers(CONTENT)) == []
            assert me.stats["connections_failed"] == 1

    @pytest.mark.asyncio
    async def test_silent_tracker_skipped(self, monkeypatch):
        monkeypatch.setattr(tcp_transport, "HANDSHAKE_TIMEOUT", 0.2)
        async with RawServer() as server:
            me = Endpoint(NodeIdentity.generate())
            assert await collect(TrackerDiscovery(me, [server.addr]).find_providers(CONTENT)) == []

    @pytest.mark.asyncio
    async def test_garbled_query_reply_skipped(self):
        tracker = Endpoint(NodeIdentity.generate(), "127.0.0.1", 0)

        async def garble(connection):
            await connection.recv()
            # 0xc1 is never valid msgpack
            await connection.send(Message(MessageType.QUERY_RESPONSE, b"\xc1"))

        tracker.accept(TRACKER_ALPN, garble)
        await tracker.bind()
        try:
            async with TrackerStub() as good:
                identity = NodeIdentity.generate()
                client = AnnounceClient(Endpoint(identity), identity, CONTENT, good.addr, addresses=["127.0.0.1:7004"])
                await client.announce_once()

                me = Endpoint(NodeIdentity.generate())
                discovery = TrackerDiscovery(me, [tracker.node_addr(), good.addr])
                found = await collect(discovery.find_providers(CONTENT))
            assert found == [NodeAddr(identity.node_id, ("127.0.0.1:7004",))]
        finally:
            await tracker.close(grace=0)
