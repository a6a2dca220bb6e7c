"""
Runtime configuration.

Defaults can be overridden through BLOBSHARE_* environment variables; CLI
flags override both.
"""

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from blobshare.core.importer import default_parallelism
from blobshare.p2p.events import DEFAULT_QUEUE_SIZE
from blobshare.p2p.discovery.announce import ANNOUNCE_INTERVAL, RETRY_DELAY


class ShareConfig(BaseModel):
    """Node configuration."""

    host: str = Field(default="0.0.0.0", description="Listen host (BLOBSHARE_HOST)")
    port: int = Field(default=0, ge=0, le=65535, description="Listen port, 0 for any (BLOBSHARE_PORT)")
    tracker: Optional[str] = Field(
        default=None,
        description="Tracker address <node_id>@<host:port> (BLOBSHARE_TRACKER)"
    )

    # Announcing
    announce_interval: float = Field(
        default=ANNOUNCE_INTERVAL, gt=0,
        description="Seconds between successful announcements"
    )
    retry_delay: float = Field(default=RETRY_DELAY, gt=0, description="Seconds before retrying a failed announcement")

    # Import
    parallelism: int = Field(
        default_factory=default_parallelism, ge=1,
        description="Files hashed concurrently during import"
    )

    # Provider events
    event_queue_size: int = Field(default=DEFAULT_QUEUE_SIZE, ge=1, description="Bounded event queue capacity")
    drop_events_when_full: bool = Field(default=False, description="Drop events instead of applying backpressure")

    # Storage
    store_root: Path = Field(default=Path("."), description="Where send/recv store directories are created")

    shutdown_grace: float = Field(default=5.0, ge=0, description="Seconds to let transfers finish on shutdown")


ENV_VARS = {
    "BLOBSHARE_HOST": "host",
    "BLOBSHARE_PORT": "port",
    "BLOBSHARE_TRACKER": "tracker",
    "BLOBSHARE_ANNOUNCE_INTERVAL": "announce_interval",
    "BLOBSHARE_RETRY_DELAY": "retry_delay",
    "BLOBSHARE_PARALLELISM": "parallelism",
    "BLOBSHARE_EVENT_QUEUE_SIZE": "event_queue_size",
    "BLOBSHARE_DROP_EVENTS": "drop_events_when_full",
    "BLOBSHARE_STORE_ROOT": "store_root",
    "BLOBSHARE_SHUTDOWN_GRACE": "shutdown_grace",
}


def load_config(environ: Optional[Mapping[str, str]] = None, **overrides) -> ShareConfig:
    """
    Build a ShareConfig from BLOBSHARE_* environment variables.

    Args:
        environ: Mapping to read from (default: os.environ)
        **overrides: Values that take precedence (None values are ignored)

    Raises:
        pydantic.ValidationError: If a value has the wrong type or is out of range
    """
    environ = os.environ if environ is None else environ
    # raw strings, pydantic coerces and validates them
    values = {field: environ[var] for var, field in ENV_VARS.items() if var in environ}
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ShareConfig(**values)
