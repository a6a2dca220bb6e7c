"""
End-to-end transfer tests.

Test Coverage:
- Authenticated connections and protocol negotiation
- Download via explicit providers, export of the result
- Skipping local blobs, resuming partial blobs
- Fallback across providers and exhaustion
- Split downloads across providers
- Tracker-based discovery
"""

import pytest

from blobshare.backends.local import LocalBlobStore
from blobshare.core.collection import Collection
from blobshare.core.errors import ConnectFailedError, DownloadError
from blobshare.core.exporter import export_collection
from blobshare.p2p.discovery.announce import AnnounceClient
from blobshare.p2p.discovery.strategy import (
    DiscoveryOptions,
    ExplicitDiscovery,
    SplitStrategy,
    TrackerDiscovery,
)
from blobshare.p2p.events import (
    ClientConnected,
    GetRequestReceived,
    TransferAborted,
    TransferCompleted,
)
from blobshare.p2p.network.downloader import BlobDownloader
from blobshare.p2p.network.protocol import BLOBS_ALPN
from blobshare.p2p.node import NodeAddr, NodeIdentity
from blobshare.p2p.transport import Endpoint

from conftest import Provider, TrackerStub


@pytest.fixture
def tree(tmp_path):
    root = tmp_path / "share"
    (root / "sub").mkdir(parents=True)
    (root / "a.txt").write_bytes(b"hi")
    (root / "sub" / "b.txt").write_bytes(b"yo")
    (root / "big.bin").write_bytes(bytes(range(256)) * 1024)
    return root


@pytest.fixture
def many_files(tmp_path):
    root = tmp_path / "many"
    root.mkdir()
    for i in range(8):
        (root / f"file{i}.txt").write_bytes(f"content of file {i}".encode() * 100)
    return root


def receiver(tmp_path, name: str = "recv"):
    return Endpoint(NodeIdentity.generate()), LocalBlobStore(tmp_path / name)


def dead_node() -> NodeAddr:
    return NodeAddr(NodeIdentity.generate().node_id, ("127.0.0.1:1",))


class TestConnections:
    """Test endpoint authentication."""

    @pytest.mark.asyncio
    async def test_unknown_protocol_refused(self, tmp_path, tree):
        async with Provider(tmp_path / "p", tree) as provider:
            endpoint = Endpoint(NodeIdentity.generate())
            with pytest.raises(ConnectFailedError):
                await endpoint.connect(provider.addr, "bogus/0")

    @pytest.mark.asyncio
    async def test_wrong_node_id_refused(self, tmp_path, tree):
        async with Provider(tmp_path / "p", tree) as provider:
            endpoint = Endpoint(NodeIdentity.generate())
            impostor = NodeAddr(NodeIdentity.generate().node_id, provider.addr.addresses)
            with pytest.raises(ConnectFailedError):
                await endpoint.connect(impostor, BLOBS_ALPN)

    @pytest.mark.asyncio
    async def test_address_book(self, tmp_path, tree):
        async with Provider(tmp_path / "p", tree) as provider:
            endpoint = Endpoint(NodeIdentity.generate())
            with pytest.raises(ConnectFailedError):
                await endpoint.connect(provider.identity.node_id, BLOBS_ALPN)
            endpoint.add_node_addr(provider.addr)
            async with await endpoint.connect(provider.identity.node_id, BLOBS_ALPN) as connection:
                assert connection.remote_node_id == provider.identity.node_id


class TestDownload:
    """Test downloading collections."""

    @pytest.mark.asyncio
    async def test_download_and_export(self, tmp_path, tree):
        async with Provider(tmp_path / "p", tree) as provider:
            endpoint, store = receiver(tmp_path)
            options = DiscoveryOptions(provider.content, ExplicitDiscovery([provider.addr]))
            stats = await BlobDownloader(endpoint, store).download(options)

        # sequence + metadata + three files
        assert stats.blobs_fetched == 5
        assert stats.providers == [provider.identity.node_id]

        collection = Collection.load(provider.content.hash, store)
        assert collection == provider.result.collection
        out = tmp_path / "out"
        out.mkdir()
        await export_collection(store, collection, out)
        assert (out / "share" / "a.txt").read_bytes() == b"hi"
        assert (out / "share" / "sub" / "b.txt").read_bytes() == b"yo"
        assert (out / "share" / "big.bin").read_bytes() == (tree / "big.bin").read_bytes()

        kinds = {type(e) for e in provider.events}
        assert ClientConnected in kinds
        assert GetRequestReceived in kinds
        assert TransferCompleted in kinds

    @pytest.mark.asyncio
    async def test_local_blobs_skipped(self, tmp_path, tree):
        async with Provider(tmp_path / "p", tree) as provider:
            endpoint, store = receiver(tmp_path)
            options = DiscoveryOptions(provider.content, ExplicitDiscovery([provider.addr]))
            await BlobDownloader(endpoint, store).download(options)

            again = DiscoveryOptions(provider.content, ExplicitDiscovery([provider.addr]))
            stats = await BlobDownloader(endpoint, store).download(again)
        assert stats.blobs_fetched == 0
        assert stats.blobs_skipped == stats.blobs_total == 5

    @pytest.mark.asyncio
    async def test_resume_partial_blob(self, tmp_path, tree):
        async with Provider(tmp_path / "p", tree) as provider:
            endpoint, store = receiver(tmp_path)
            big = next(e.hash for e in provider.result.collection if e.name.endswith("big.bin"))
            head = (tree / "big.bin").read_bytes()[:100_000]
            store.partial_path(big).write_bytes(head)

            options = DiscoveryOptions(provider.content, ExplicitDiscovery([provider.addr]))
            await BlobDownloader(endpoint, store).download(options)

        assert store.get_bytes(big) == (tree / "big.bin").read_bytes()
        requests = [e for e in provider.events if isinstance(e, GetRequestReceived) and e.hash == big]
        assert requests[0].offset == 100_000

    @pytest.mark.asyncio
    async def test_fallback_to_next_provider(self, tmp_path, tree):
        async with Provider(tmp_path / "empty") as empty, Provider(tmp_path / "p", tree) as provider:
            endpoint, store = receiver(tmp_path)
            options = DiscoveryOptions(
                provider.content,
                ExplicitDiscovery([dead_node(), empty.addr, provider.addr]),
            )
            stats = await BlobDownloader(endpoint, store).download(options)

        assert stats.providers == [provider.identity.node_id]
        assert store.has(provider.content.hash)
        # the empty provider answered NOT_FOUND
        assert any(isinstance(e, TransferAborted) for e in empty.events)

    @pytest.mark.asyncio
    async def test_corrupt_partial_discarded(self, tmp_path, tree):
        async with Provider(tmp_path / "p1", tree) as first, Provider(tmp_path / "p2", tree) as second:
            endpoint, store = receiver(tmp_path)
            big = next(e.hash for e in first.result.collection if e.name.endswith("big.bin"))
            store.partial_path(big).write_bytes(b"\xff" * 1000)

            options = DiscoveryOptions(first.content, ExplicitDiscovery([first.addr, second.addr]))
            stats = await BlobDownloader(endpoint, store).download(options)

        assert store.get_bytes(big) == (tree / "big.bin").read_bytes()
        assert second.identity.node_id in stats.providers

    @pytest.mark.asyncio
    async def test_no_provider_left(self, tmp_path, tree):
        async with Provider(tmp_path / "empty") as empty, Provider(tmp_path / "p", tree) as provider:
            endpoint, store = receiver(tmp_path)
            options = DiscoveryOptions(provider.content, ExplicitDiscovery([dead_node(), empty.addr]))
            with pytest.raises(DownloadError):
                await BlobDownloader(endpoint, store).download(options)
        assert not store.has(provider.content.hash)


class TestSplit:
    """Test splitting a download across providers."""

    @pytest.mark.asyncio
    async def test_children_spread_over_providers(self, tmp_path, many_files):
        async with Provider(tmp_path / "p1", many_files) as first, Provider(tmp_path / "p2", many_files) as second:
            assert first.content == second.content
            endpoint, store = receiver(tmp_path)
            options = DiscoveryOptions(
                first.content,
                ExplicitDiscovery([first.addr, second.addr]),
                SplitStrategy.SPLIT_ACROSS_PROVIDERS,
            )
            stats = await BlobDownloader(endpoint, store).download(options)

        assert set(stats.providers) == {first.identity.node_id, second.identity.node_id}
        assert stats.blobs_fetched == 10
        collection = Collection.load(first.content.hash, store)
        for entry in collection:
            assert store.has(entry.hash)

        first_requests = {e.hash for e in first.events if isinstance(e, GetRequestReceived)}
        second_requests = {e.hash for e in second.events if isinstance(e, GetRequestReceived)}
        # children are fetched from exactly one provider each
        children = set(collection.hashes)
        assert not (first_requests & second_requests & children)

    @pytest.mark.asyncio
    async def test_split_falls_back_within_group(self, tmp_path, many_files):
        async with Provider(tmp_path / "p1", many_files) as provider, Provider(tmp_path / "empty") as empty:
            endpoint, store = receiver(tmp_path)
            options = DiscoveryOptions(
                provider.content,
                ExplicitDiscovery([provider.addr, empty.addr]),
                SplitStrategy.SPLIT_ACROSS_PROVIDERS,
            )
            stats = await BlobDownloader(endpoint, store).download(options)

        assert stats.providers == [provider.identity.node_id]
        assert stats.blobs_fetched == 10


class TestTrackerDownload:
    """Test discovery through a tracker."""

    @pytest.mark.asyncio
    async def test_announce_then_download(self, tmp_path, tree):
        async with TrackerStub() as tracker, Provider(tmp_path / "p", tree) as provider:
            announcer = AnnounceClient(provider.endpoint, provider.identity, provider.content, tracker.addr)
            await announcer.announce_once()

            endpoint, store = receiver(tmp_path)
            options = DiscoveryOptions(provider.content, TrackerDiscovery(endpoint, [tracker.addr]))
            stats = await BlobDownloader(endpoint, store).download(options)

        assert stats.providers == [provider.identity.node_id]
        assert Collection.load(provider.content.hash, store) == provider.result.collection
