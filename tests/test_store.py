"""
Local blob store tests.

Test Coverage:
- Adding and reading blobs
- Pins (TempTag) and named tags
- Garbage collection reachability
- Partial download finalization
"""

import pytest

from blobshare.backends.local import LocalBlobStore
from blobshare.core.collection import Collection
from blobshare.core.content_addressing import HashAndFormat
from blobshare.core.errors import BlobNotFoundError, BlobVerificationError


@pytest.fixture
def store(tmp_path):
    return LocalBlobStore(tmp_path / "store")


class TestBlobs:
    """Test adding and reading blobs."""

    def test_add_bytes(self, store):
        tag = store.add_bytes(b"hello")
        assert store.has(tag.hash)
        assert store.size(tag.hash) == 5
        assert store.get_bytes(tag.hash) == b"hello"
        assert store.read_range(tag.hash, 1, 3) == b"ell"

    def test_add_same_bytes_twice(self, store):
        first = store.add_bytes(b"same")
        second = store.add_bytes(b"same")
        assert first.hash == second.hash
        assert list(store.list_all()) == [first.hash]

    @pytest.mark.asyncio
    async def test_add_path(self, store, tmp_path):
        path = tmp_path / "file.bin"
        path.write_bytes(b"file content")
        tag = await store.add_path(path)
        assert store.get_bytes(tag.hash) == b"file content"
        assert not any(store.partial_dir.iterdir())

    @pytest.mark.asyncio
    async def test_export(self, store, tmp_path):
        tag = store.add_bytes(b"exported")
        target = tmp_path / "out" / "nested" / "file.txt"
        assert await store.export(tag.hash, target) == 8
        assert target.read_bytes() == b"exported"

    def test_missing_blob(self, store):
        missing = store.add_bytes(b"x").hash
        store._blob_path(missing).unlink()
        with pytest.raises(BlobNotFoundError):
            store.get_bytes(missing)
        with pytest.raises(BlobNotFoundError):
            store.size(missing)


class TestPinsAndGC:
    """Test garbage collection protection."""

    def test_unpinned_blob_collected(self, store):
        tag = store.add_bytes(b"temporary")
        tag.release()
        assert store.gc() == 1
        assert not store.has(tag.hash)

    def test_pinned_blob_kept(self, store):
        tag = store.add_bytes(b"pinned")
        assert store.gc() == 0
        assert store.has(tag.hash)

    def test_release_is_idempotent(self, store):
        tag = store.add_bytes(b"x")
        extra = store.pin(tag.content)
        tag.release()
        tag.release()
        assert store.gc() == 0
        extra.release()
        assert store.gc() == 1

    def test_context_manager_releases(self, store):
        with store.add_bytes(b"scoped") as tag:
            assert tag.content in store.pinned()
        assert tag.released
        assert store.pinned() == []

    def test_collection_protects_children(self, store):
        a = store.add_bytes(b"a")
        b = store.add_bytes(b"b")
        seq = Collection([("a", a.hash), ("b", b.hash)]).store(store)
        a.release()
        b.release()

        assert store.gc() == 0
        assert store.has(a.hash) and store.has(b.hash)

        seq.release()
        # sequence, metadata and both entries
        assert store.gc() == 4

    def test_named_tags_persist(self, store, tmp_path):
        tag = store.add_bytes(b"kept")
        store.set_tag("keep", tag.content)
        tag.release()

        reopened = LocalBlobStore(tmp_path / "store")
        assert reopened.tags() == {"keep": HashAndFormat.raw(tag.hash)}
        assert reopened.gc() == 0

        assert reopened.delete_tag("keep")
        assert reopened.gc() == 1


class TestPartial:
    """Test partial download handling."""

    def test_finalize_verifies(self, store):
        expected = store.add_bytes(b"real content")
        blob_hash = expected.hash
        expected.release()
        store.gc()

        store.partial_path(blob_hash).write_bytes(b"real ")
        assert store.partial_size(blob_hash) == 5
        with open(store.partial_path(blob_hash), "ab") as f:
            f.write(b"content")
        assert store.finalize_partial(blob_hash) == 12
        assert store.get_bytes(blob_hash) == b"real content"
        assert store.partial_size(blob_hash) == 0

    def test_finalize_rejects_corrupt_data(self, store):
        tag = store.add_bytes(b"good")
        blob_hash = tag.hash
        tag.release()
        store.gc()

        store.partial_path(blob_hash).write_bytes(b"evil")
        with pytest.raises(BlobVerificationError):
            store.finalize_partial(blob_hash)
        assert not store.has(blob_hash)
        assert not store.partial_path(blob_hash).exists()
