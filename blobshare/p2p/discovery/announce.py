"""
Announce client.

Keeps a tracker informed that this node hosts a piece of content. Each
cycle builds a fresh signed announcement, connects to the tracker and sends
it. Success is followed by a long sleep before re-announcing (trackers
expire stale entries); failure is logged and retried after a short delay.
The loop only ends when ``stop`` is called.

State machine:
    IDLE -> CONNECTING -> SENDING -> SLEEPING -> CONNECTING ...
    any state -> STOPPED
"""

import asyncio
from enum import Enum
from typing import Dict, Optional, Sequence
import logging

from blobshare.core.content_addressing import HashAndFormat
from blobshare.core.errors import ConnectFailedError, SendFailedError
from blobshare.p2p.node import NodeAddr, NodeIdentity
from .tracker import TRACKER_ALPN, AnnounceKind, Announcement, SignedAnnounce, absolute_time_now, announce

logger = logging.getLogger(__name__)


ANNOUNCE_INTERVAL = 30.0  # seconds between successful announcements
RETRY_DELAY = 5.0  # seconds before retrying a failed announcement
STOP_TIMEOUT = 1.0


class AnnounceState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SENDING = "sending"
    SLEEPING = "sleeping"
    STOPPED = "stopped"


class AnnounceClient:
    """
    Periodically announce content to a tracker.

    Usage:
        client = AnnounceClient(endpoint, identity, content, tracker)
        client.start()
        ...
        await client.stop()
    """

    def __init__(
        self,
        endpoint,
        identity: NodeIdentity,
        content: HashAndFormat,
        tracker: NodeAddr,
        announce_interval: float = ANNOUNCE_INTERVAL,
        retry_delay: float = RETRY_DELAY,
        kind: AnnounceKind = AnnounceKind.COMPLETE,
        addresses: Optional[Sequence[str]] = None,
    ):
        """
        Initialize announce client.

        Args:
            endpoint: Local Endpoint used to reach the tracker
            identity: Key that signs the announcements (the hosting node)
            content: Content being hosted
            tracker: Tracker address
            announce_interval: Sleep after a successful announcement
            retry_delay: Sleep after a failed attempt
            kind: Complete or partial possession
            addresses: Addresses to advertise (default: the endpoint's own)
        """
        self.endpoint = endpoint
        self.identity = identity
        self.content = content
        self.tracker = tracker
        self.announce_interval = announce_interval
        self.retry_delay = retry_delay
        self.kind = kind
        self.addresses = addresses

        self.state = AnnounceState.IDLE
        self._last_timestamp = 0
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        self.stats: Dict[str, int] = {
            "announcements_sent": 0,
            "connect_failures": 0,
            "send_failures": 0,
        }

    def build_announcement(self) -> SignedAnnounce:
        """Build and sign a fresh announcement. Timestamps never go backwards."""
        timestamp = max(absolute_time_now(), self._last_timestamp)
        self._last_timestamp = timestamp
        addresses = self.addresses
        if addresses is None:
            addresses = self.endpoint.node_addr().addresses
        record = Announcement(
            host=self.identity.node_id,
            content=self.content,
            kind=self.kind,
            timestamp=timestamp,
            addresses=tuple(addresses),
        )
        return SignedAnnounce.sign(record, self.identity)

    async def announce_once(self):
        """
        Run one announce cycle.

        Raises:
            ConnectFailedError: If the tracker can't be reached
            SendFailedError: If the announcement isn't accepted
        """
        signed = self.build_announcement()
        self.state = AnnounceState.CONNECTING
        connection = await self.endpoint.connect(self.tracker, TRACKER_ALPN)
        async with connection:
            self.state = AnnounceState.SENDING
            await announce(connection, signed)
        self.stats["announcements_sent"] += 1
        logger.info(f"Announced {self.content} to tracker {self.tracker.node_id[:16]}...")

    async def run(self):
        """Announce until stopped."""
        try:
            while not self._stop_event.is_set():
                try:
                    await self.announce_once()
                    delay = self.announce_interval
                except ConnectFailedError as e:
                    self.stats["connect_failures"] += 1
                    logger.warning(f"Failed to connect to tracker: {e}; retrying in {self.retry_delay}s")
                    delay = self.retry_delay
                except SendFailedError as e:
                    self.stats["send_failures"] += 1
                    logger.warning(f"Failed to send announcement: {e}; retrying in {self.retry_delay}s")
                    delay = self.retry_delay
                except Exception:
                    self.stats["send_failures"] += 1
                    logger.exception(f"Unexpected error announcing; retrying in {self.retry_delay}s")
                    delay = self.retry_delay

                self.state = AnnounceState.SLEEPING
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.state = AnnounceState.STOPPED

    def start(self):
        """Start announcing in a background task."""
        if self._task is not None and not self._task.done():
            logger.warning("Announce client already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run())

    async def stop(self, timeout: float = STOP_TIMEOUT):
        """Stop announcing; an attempt in flight is abandoned after ``timeout``."""
        self._stop_event.set()
        if self._task is None:
            self.state = AnnounceState.STOPPED
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Announce client stopped")
