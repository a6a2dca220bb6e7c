#!/usr/bin/env python3
"""
blobshare CLI

Share a file or directory with other nodes, or receive one.

Commands:
- share <path>: import into a fresh store, print a ticket, serve until
  interrupted (and announce to a tracker if one is configured)
- receive <target> <ticket|content-id>...: download the content from the
  providers named by the tickets (or found through a tracker) and export it
  into <target>
"""

import argparse
import asyncio
import logging
import secrets
import signal
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from blobshare.backends.local import LocalBlobStore
from blobshare.config import ShareConfig, load_config
from blobshare.core.collection import Collection
from blobshare.core.content_addressing import HashAndFormat
from blobshare.core.errors import BlobShareError, InvalidTicketError
from blobshare.core.exporter import export_blob, export_collection
from blobshare.core.importer import import_path
from blobshare.p2p.discovery.announce import AnnounceClient
from blobshare.p2p.discovery.strategy import (
    CombinedDiscovery,
    DiscoveryOptions,
    ExplicitDiscovery,
    Shuffled,
    SplitStrategy,
    TrackerDiscovery,
)
from blobshare.p2p.events import EventSink
from blobshare.p2p.network.downloader import BlobDownloader
from blobshare.p2p.network.protocol import BLOBS_ALPN, BlobsProtocol
from blobshare.p2p.node import SECRET_ENV_VAR, NodeAddr, NodeIdentity, get_or_generate_identity
from blobshare.p2p.ticket import TICKET_PREFIX, BlobTicket
from blobshare.p2p.transport import Endpoint


STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class InterceptHandler(logging.Handler):
    """Route stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(exception=record.exc_info).log(level, record.getMessage())


def setup_logging(verbose: int = 0):
    """Install a stderr loguru sink and send stdlib logging to it."""
    level = "WARNING"
    if verbose == 1:
        level = "INFO"
    elif verbose >= 2:
        level = "DEBUG"
    logger.remove()
    logger.add(sys.stderr, level=level)
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


def send_dir(root: Path) -> Path:
    """Fresh store directory for a share session."""
    return root / f".blobshare-send-{secrets.token_hex(16)}"


def recv_dir(root: Path, content: HashAndFormat) -> Path:
    """Store directory for receiving ``content``; reused across retries."""
    return root / f".blobshare-recv-{content.hash.hex}"


def parse_sources(args: List[str]) -> Tuple[HashAndFormat, List[NodeAddr]]:
    """
    Parse receive arguments (tickets or content ids).

    Returns:
        (content, providers named by tickets)

    Raises:
        InvalidTicketError: If an argument is malformed, none is given, or
            they name different content
    """
    if not args:
        raise InvalidTicketError("no tickets provided")
    contents = set()
    providers = []
    for arg in args:
        if arg.startswith(TICKET_PREFIX):
            ticket = BlobTicket.parse(arg)
            contents.add(ticket.content)
            providers.append(ticket.node)
        else:
            contents.add(HashAndFormat.parse(arg))
    if len(contents) != 1:
        raise InvalidTicketError("all tickets must be for the same content")
    return contents.pop(), providers


class ShareCLI:
    """
    CLI for sharing and receiving content.
    """

    def __init__(self, config: Optional[ShareConfig] = None):
        """Initialize CLI."""
        self.config = config
        self._stop_event: Optional[asyncio.Event] = None

    def request_stop(self):
        """Ask a running share session to shut down."""
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in STOP_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig.name} not supported here")

    def _remove_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in STOP_SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    async def share(self, args) -> int:
        """Share a file or directory until interrupted."""
        config = self.config
        path = Path.cwd() / args.path
        print(f"📦 Sharing {path}")

        identity, generated = get_or_generate_identity()
        if generated:
            print(f"Generated new secret key: {identity.secret_hex()}")
            print(f"To reuse this key, set the {SECRET_ENV_VAR} environment variable to this value")

        store = LocalBlobStore(send_dir(config.store_root))
        events = EventSink(
            maxsize=config.event_queue_size,
            drop_when_full=config.drop_events_when_full,
        )
        endpoint = Endpoint(identity, config.host, config.port)
        endpoint.accept(BLOBS_ALPN, BlobsProtocol(store, events).handle_connection)

        self._stop_event = asyncio.Event()
        announcer = None
        result = None
        events.start()
        try:
            result = await import_path(path, store, config.parallelism)
            await endpoint.bind()
            addr = endpoint.node_addr()
            ticket = BlobTicket(addr, result.content)

            print(f"Node ID: {identity.node_id}")
            print(f"Full address: {addr}")
            print(f"Hash: {result.content}")
            print(f"To receive, use: blobshare receive <target> {ticket}")
            print()

            if config.tracker:
                tracker = NodeAddr.parse(config.tracker)
                announcer = AnnounceClient(
                    endpoint, identity, result.content, tracker,
                    announce_interval=config.announce_interval,
                    retry_delay=config.retry_delay,
                )
                announcer.start()
                print(f"📢 Announcing to tracker {tracker.node_id[:16]}...")

            self._install_signal_handlers()
            print("Server is running. Press Ctrl+C to stop...")
            await self._stop_event.wait()
            print("\n🛑 Shutting down...")
        finally:
            self._remove_signal_handlers()
            if announcer is not None:
                await announcer.stop()
            await endpoint.close(grace=config.shutdown_grace)
            await events.stop()
            if result is not None:
                result.release()
            self._stop_event = None

        print("✅ Stopped")
        return 0

    async def receive(self, args) -> int:
        """Download content and export it into a target directory."""
        config = self.config
        content, providers = parse_sources(args.sources)
        tracker = args.tracker or config.tracker
        if not providers and not tracker:
            raise InvalidTicketError("content ids need --tracker to find providers")

        target = Path(args.target)
        store = LocalBlobStore(recv_dir(config.store_root, content))
        endpoint = Endpoint(NodeIdentity.generate())
        for provider in providers:
            endpoint.add_node_addr(provider)

        sources = []
        if providers:
            sources.append(Shuffled(ExplicitDiscovery(providers)))
        if tracker:
            sources.append(TrackerDiscovery(endpoint, [NodeAddr.parse(tracker)]))
        split = SplitStrategy.SPLIT_ACROSS_PROVIDERS if args.split else SplitStrategy.NONE
        options = DiscoveryOptions(content, CombinedDiscovery(*sources), split)

        print(f"📥 Receiving {content}")
        try:
            stats = await BlobDownloader(endpoint, store).download(options)
            print(
                f"Received {stats.blobs_fetched} blobs ({stats.bytes_received} bytes), "
                f"{stats.blobs_skipped} already local"
            )
            with store.pin(content):
                if content.is_hash_seq:
                    collection = Collection.load(content.hash, store)
                    written = await export_collection(store, collection, target)
                else:
                    written = [await export_blob(store, content.hash, target / content.hash.hex)]
        finally:
            await endpoint.close(grace=0)

        print(f"✅ Exported {len(written)} files to {target}")
        return 0

    def create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog="blobshare",
            description="Share files and directories between nodes",
            formatter_class=argparse.RawDescriptionHelpFormatter
        )
        parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")

        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # share command
        share_parser = subparsers.add_parser("share", help="Share a file or directory")
        share_parser.add_argument("path", help="File or directory to share")
        share_parser.add_argument("--host", default=None, help="Listen host")
        share_parser.add_argument("--port", type=int, default=None, help="Listen port")
        share_parser.add_argument("--tracker", default=None, help="Tracker address <node_id>@<host:port>")

        # receive command
        receive_parser = subparsers.add_parser("receive", aliases=["recv"], help="Receive a file or directory")
        receive_parser.add_argument("target", help="Directory to export into")
        receive_parser.add_argument("sources", nargs="+", help="Tickets or content ids (all for the same content)")
        receive_parser.add_argument("--tracker", default=None, help="Tracker address <node_id>@<host:port>")
        receive_parser.add_argument("--split", action="store_true", help="Fetch from several providers at once")

        return parser

    async def run_async(self, args) -> int:
        """Run CLI command asynchronously."""
        try:
            if args.command == "share":
                return await self.share(args)
            elif args.command in ("receive", "recv"):
                return await self.receive(args)
            else:
                print("❌ Unknown command. Use --help for usage.")
                return 1
        except BlobShareError as e:
            print(f"❌ {e}")
            return 1

    def run(self, argv=None) -> int:
        """Run CLI (entry point)."""
        parser = self.create_parser()
        args = parser.parse_args(argv)

        if not args.command:
            parser.print_help()
            return 1

        setup_logging(args.verbose)
        if self.config is None:
            try:
                self.config = load_config(
                    host=getattr(args, "host", None),
                    port=getattr(args, "port", None),
                    tracker=getattr(args, "tracker", None),
                )
            except ValidationError as e:
                print(f"❌ Invalid configuration: {e}")
                return 1
        return asyncio.run(self.run_async(args))


def main():
    """CLI entry point."""
    cli = ShareCLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
