"""
Network Transport Layer

TCP transport for P2P communication.
"""

from .tcp_transport import (
    Connection,
    Endpoint,
    Message,
    MessageType,
    MESSAGE_SIZE_LIMIT
)

__all__ = [
    "Connection",
    "Endpoint",
    "Message",
    "MessageType",
    "MESSAGE_SIZE_LIMIT"
]
