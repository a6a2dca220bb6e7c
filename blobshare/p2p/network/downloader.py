"""
Content downloader.

Fetches a HashAndFormat (a single blob, or a hash sequence and every blob
it lists) from the providers a DiscoveryOptions yields.

- Blobs already in the local store are skipped
- A provider that fails is dropped and the next candidate takes over,
  resuming any partially received blob
- With SplitStrategy.SPLIT_ACROSS_PROVIDERS the children of a hash sequence
  are divided into disjoint groups, one per provider, fetched concurrently
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Deque, Iterable, List, Optional
import logging

from blobshare.core.content_addressing import Hash, decode_hash_seq
from blobshare.core.errors import BlobShareError, DownloadError
from blobshare.p2p.discovery.strategy import DiscoveryOptions, SplitStrategy
from blobshare.p2p.node import NodeAddr
from .protocol import BLOBS_ALPN, fetch_blob

logger = logging.getLogger(__name__)


@dataclass
class DownloadStats:
    """Outcome of a download."""
    blobs_total: int = 0
    blobs_skipped: int = 0
    blobs_fetched: int = 0
    bytes_received: int = 0
    providers: List[str] = field(default_factory=list)
    elapsed: float = 0.0


class ProviderQueue:
    """
    Providers still worth trying, pulled lazily from a candidate iterator.

    A provider that failed is never handed out again; one that succeeded can
    be put back at the front with ``keep``.
    """

    def __init__(
        self,
        candidates: Optional[AsyncIterator[NodeAddr]] = None,
        providers: Iterable[NodeAddr] = (),
    ):
        self._candidates = candidates
        self._ready: Deque[NodeAddr] = deque(providers)

    async def next(self) -> Optional[NodeAddr]:
        if self._ready:
            return self._ready.popleft()
        if self._candidates is None:
            return None
        provider = await anext(self._candidates, None)
        if provider is None:
            self._candidates = None
        return provider

    def keep(self, provider: NodeAddr):
        self._ready.appendleft(provider)

    async def drain(self) -> List[NodeAddr]:
        """Every provider left, including not yet pulled candidates."""
        providers = []
        while True:
            provider = await self.next()
            if provider is None:
                return providers
            providers.append(provider)


class BlobDownloader:
    """Download content into a LocalBlobStore."""

    def __init__(self, endpoint, store):
        """
        Initialize downloader.

        Args:
            endpoint: Local Endpoint used to dial providers
            store: LocalBlobStore receiving the blobs
        """
        self.endpoint = endpoint
        self.store = store

    async def download(self, options: DiscoveryOptions) -> DownloadStats:
        """
        Fetch ``options.content`` and everything it references.

        Returns:
            DownloadStats

        Raises:
            DownloadError: If no candidate could supply some blob
        """
        start = time.monotonic()
        stats = DownloadStats()
        queue = ProviderQueue(options.candidates())
        root = options.content.hash

        await self._fetch_group(self._missing([root], stats), queue, stats)
        if options.content.is_hash_seq:
            children = list(dict.fromkeys(decode_hash_seq(self.store.get_bytes(root))))
            missing = self._missing(children, stats)
            if options.split_strategy is SplitStrategy.SPLIT_ACROSS_PROVIDERS:
                await self._fetch_split(missing, queue, stats)
            else:
                await self._fetch_group(missing, queue, stats)

        stats.elapsed = time.monotonic() - start
        logger.info(
            f"Downloaded {options.content}: {stats.blobs_fetched} fetched, "
            f"{stats.blobs_skipped} already local, {stats.bytes_received} bytes "
            f"from {len(stats.providers)} providers in {stats.elapsed:.2f}s"
        )
        return stats

    async def _fetch_split(self, missing: List[Hash], queue: ProviderQueue, stats: DownloadStats):
        if not missing:
            return
        providers = await queue.drain()
        groups = min(len(providers), len(missing))
        if groups <= 1:
            await self._fetch_group(missing, ProviderQueue(providers=providers), stats)
            return

        # Each group starts with its own provider and falls back to the others.
        tasks = [
            self._fetch_group(
                missing[i::groups],
                ProviderQueue(providers=providers[i:] + providers[:i]),
                stats,
            )
            for i in range(groups)
        ]
        logger.info(f"Splitting {len(missing)} blobs across {groups} providers")
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    def _missing(self, hashes: List[Hash], stats: DownloadStats) -> List[Hash]:
        missing = []
        for blob_hash in hashes:
            stats.blobs_total += 1
            if self.store.has(blob_hash):
                stats.blobs_skipped += 1
            else:
                missing.append(blob_hash)
        return missing

    async def _fetch_group(self, hashes: List[Hash], queue: ProviderQueue, stats: DownloadStats):
        pending = deque(hashes)
        while pending:
            provider = await queue.next()
            if provider is None:
                raise DownloadError(
                    f"no provider could supply {pending[0].hex[:16]}... "
                    f"({len(pending)} blobs outstanding)"
                )
            try:
                async with await self.endpoint.connect(provider, BLOBS_ALPN) as connection:
                    while pending:
                        stats.bytes_received += await fetch_blob(connection, self.store, pending[0])
                        stats.blobs_fetched += 1
                        pending.popleft()
            except (BlobShareError, OSError, EOFError, ValueError) as e:
                logger.warning(f"Provider {provider.node_id[:16]}... failed: {e}")
                continue
            if provider.node_id not in stats.providers:
                stats.providers.append(provider.node_id)
            queue.keep(provider)
