"""
Content Discovery

Provider candidates for downloads, the tracker wire contract, and the
client that announces hosted content to a tracker.
"""

from .tracker import (
    TRACKER_ALPN,
    AnnounceKind,
    Announcement,
    SignedAnnounce,
)
from .strategy import (
    CombinedDiscovery,
    DiscoveryOptions,
    ExplicitDiscovery,
    Shuffled,
    SplitStrategy,
    TrackerDiscovery,
)
from .announce import AnnounceClient, AnnounceState

__all__ = [
    "TRACKER_ALPN",
    "AnnounceKind",
    "Announcement",
    "SignedAnnounce",
    "CombinedDiscovery",
    "DiscoveryOptions",
    "ExplicitDiscovery",
    "Shuffled",
    "SplitStrategy",
    "TrackerDiscovery",
    "AnnounceClient",
    "AnnounceState",
]
