"""
Provider-side transfer events.

The blob provider reports what it is doing through a bounded queue; an
EventSink task consumes the queue. When the queue is full, producers wait
(backpressure) or, if the sink was built with ``drop_when_full``, the event
is dropped and counted.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union
import logging

from blobshare.core.content_addressing import Hash

logger = logging.getLogger(__name__)


DEFAULT_QUEUE_SIZE = 100


@dataclass(frozen=True)
class TransferStats:
    """Per-request transfer statistics."""
    bytes_sent: int
    duration: float


@dataclass(frozen=True)
class ClientConnected:
    connection_id: int
    node_id: str


@dataclass(frozen=True)
class GetRequestReceived:
    connection_id: int
    request_id: int
    hash: Hash
    offset: int = 0


@dataclass(frozen=True)
class TransferProgress:
    connection_id: int
    request_id: int
    end_offset: int


@dataclass(frozen=True)
class TransferCompleted:
    connection_id: int
    request_id: int
    stats: TransferStats


@dataclass(frozen=True)
class TransferAborted:
    connection_id: int
    request_id: int
    stats: Optional[TransferStats] = None


@dataclass(frozen=True)
class Other:
    """Anything else a provider wants to report."""
    connection_id: int
    description: str
    details: dict = field(default_factory=dict)


ProviderEvent = Union[
    ClientConnected,
    GetRequestReceived,
    TransferProgress,
    TransferCompleted,
    TransferAborted,
    Other,
]


def describe_event(event: ProviderEvent) -> str:
    """One-line human-readable form of an event."""
    if isinstance(event, ClientConnected):
        return f"Client connected: {event.connection_id} {event.node_id[:16]}..."
    elif isinstance(event, GetRequestReceived):
        return (
            f"Get request received: {event.connection_id} {event.request_id} "
            f"{event.hash.hex[:16]}... offset={event.offset}"
        )
    elif isinstance(event, TransferProgress):
        return f"Transfer progress: {event.connection_id} {event.request_id} {event.end_offset}"
    elif isinstance(event, TransferCompleted):
        return (
            f"Transfer completed: {event.connection_id} {event.request_id} "
            f"{event.stats.bytes_sent} bytes in {event.stats.duration:.3f}s"
        )
    elif isinstance(event, TransferAborted):
        sent = event.stats.bytes_sent if event.stats else 0
        return f"Transfer aborted: {event.connection_id} {event.request_id} after {sent} bytes"
    elif isinstance(event, Other):
        return f"Received event: {event.connection_id} {event.description}"
    raise TypeError(f"unknown provider event {event!r}")


def log_event(event: ProviderEvent):
    """Default event handler: progress at debug level, everything else at info."""
    if isinstance(event, TransferProgress):
        logger.debug(describe_event(event))
    else:
        logger.info(describe_event(event))


class EventSink:
    """
    Bounded event queue plus the task that drains it.

    Usage:
        sink = EventSink()
        sink.start()
        await sink.emit(ClientConnected(1, node_id))
        ...
        await sink.stop()
    """

    def __init__(
        self,
        handler: Callable[[ProviderEvent], Any] = log_event,
        maxsize: int = DEFAULT_QUEUE_SIZE,
        drop_when_full: bool = False,
    ):
        """
        Initialize event sink.

        Args:
            handler: Called with each event (may be a coroutine function)
            maxsize: Queue capacity
            drop_when_full: Drop events instead of blocking producers
        """
        self.handler = handler
        self.drop_when_full = drop_when_full
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None

        self.stats = {
            "events_emitted": 0,
            "events_handled": 0,
            "events_dropped": 0,
            "handler_errors": 0,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def emit(self, event: ProviderEvent):
        """
        Queue an event.

        Blocks while the queue is full unless ``drop_when_full`` is set.
        """
        if self.drop_when_full:
            try:
                self.queue.put_nowait(event)
            except asyncio.QueueFull:
                self.stats["events_dropped"] += 1
                return
        else:
            await self.queue.put(event)
        self.stats["events_emitted"] += 1

    def start(self):
        """Start the consumer task."""
        if self.running:
            logger.warning("Event sink already running")
            return
        self._task = asyncio.create_task(self._consume())

    async def _consume(self):
        while True:
            event = await self.queue.get()
            try:
                result = self.handler(event)
                if asyncio.iscoroutine(result):
                    await result
                self.stats["events_handled"] += 1
            except Exception:
                self.stats["handler_errors"] += 1
                logger.exception(f"Event handler failed for {type(event).__name__}")
            finally:
                self.queue.task_done()

    async def stop(self, drain: bool = True):
        """
        Stop the consumer task.

        Args:
            drain: Handle events already queued before stopping
        """
        if self._task is None:
            return
        if drain and not self._task.done():
            await self.queue.join()
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
