"""
Content Discovery

Decides which providers a receiver asks for content, and in what order.

Sources:
- Explicit: a fixed list of providers (e.g. from tickets)
- Tracker: ask a tracker which hosts announced the content

Candidates come out of a lazy async iterator; a downloader pulls the next
one only when the previous provider failed. Iterators are single-use.
"""

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, List, Optional, Sequence
import logging

from blobshare.core.content_addressing import HashAndFormat
from blobshare.core.errors import ConnectFailedError, SendFailedError
from blobshare.p2p.node import NodeAddr
from .tracker import TRACKER_ALPN, AnnounceKind, query

logger = logging.getLogger(__name__)


class SplitStrategy(Enum):
    """How a download is spread over providers."""
    NONE = "none"  # one provider at a time, next one on failure
    SPLIT_ACROSS_PROVIDERS = "split"  # child blobs divided across providers, fetched concurrently


class ContentDiscovery(ABC):
    """Base class for provider sources."""

    @abstractmethod
    def find_providers(self, content: HashAndFormat) -> AsyncIterator[NodeAddr]:
        """Yield providers for ``content``, best first."""


class ExplicitDiscovery(ContentDiscovery):
    """A fixed list of providers, yielded in the given order."""

    def __init__(self, providers: Sequence[NodeAddr]):
        self.providers = list(providers)

    async def find_providers(self, content: HashAndFormat) -> AsyncIterator[NodeAddr]:
        for provider in self.providers:
            yield provider


class Shuffled(ContentDiscovery):
    """Wrap another source and yield its providers in random order."""

    def __init__(self, inner: ContentDiscovery, rng: Optional[random.Random] = None):
        self.inner = inner
        self.rng = rng or random.Random()

    async def find_providers(self, content: HashAndFormat) -> AsyncIterator[NodeAddr]:
        providers = [p async for p in self.inner.find_providers(content)]
        self.rng.shuffle(providers)
        for provider in providers:
            yield provider


class CombinedDiscovery(ContentDiscovery):
    """Exhaust each source in turn."""

    def __init__(self, *sources: ContentDiscovery):
        self.sources = sources

    async def find_providers(self, content: HashAndFormat) -> AsyncIterator[NodeAddr]:
        for source in self.sources:
            async for provider in source.find_providers(content):
                yield provider


class TrackerDiscovery(ContentDiscovery):
    """
    Ask one or more trackers for hosts that announced the content.

    A tracker that can't be reached is logged and skipped.
    """

    def __init__(
        self,
        endpoint,
        trackers: Sequence[NodeAddr],
        kind: AnnounceKind = AnnounceKind.COMPLETE,
    ):
        """
        Initialize tracker discovery.

        Args:
            endpoint: Local Endpoint used to reach the trackers
            trackers: Tracker addresses
            kind: Which announcements to ask for
        """
        self.endpoint = endpoint
        self.trackers = list(trackers)
        self.kind = kind

    async def query_tracker(self, tracker: NodeAddr, content: HashAndFormat) -> List[NodeAddr]:
        try:
            async with await self.endpoint.connect(tracker, TRACKER_ALPN) as connection:
                hosts = await query(connection, content, self.kind)
        except (ConnectFailedError, SendFailedError) as e:
            logger.warning(f"Tracker {tracker.node_id[:16]}... unavailable: {e}")
            return []
        logger.info(f"Tracker {tracker.node_id[:16]}... returned {len(hosts)} hosts for {content}")
        return hosts

    async def find_providers(self, content: HashAndFormat) -> AsyncIterator[NodeAddr]:
        for tracker in self.trackers:
            for host in await self.query_tracker(tracker, content):
                if host.node_id == self.endpoint.node_id:
                    continue
                yield host


@dataclass
class DiscoveryOptions:
    """What to fetch, where to look, and how to spread the work."""

    content: HashAndFormat
    source: ContentDiscovery
    split_strategy: SplitStrategy = SplitStrategy.NONE

    async def candidates(self) -> AsyncIterator[NodeAddr]:
        """
        Providers to try, each node at most once.

        Returns a fresh single-use iterator on every call.
        """
        seen = set()
        async for provider in self.source.find_providers(self.content):
            if provider.node_id in seen:
                continue
            seen.add(provider.node_id)
            yield provider
