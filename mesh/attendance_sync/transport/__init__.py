"""
Transport module - pluggable peer connectivity.

Backends:
    - InMemoryTransport: in-process relay hub (tests, local development)
    - WebSocketTransport: aiohttp websocket client to one or more relays

RelayServer is the matching aiohttp relay process.
"""

from .base import MSG_GET, MSG_PUT, Transport, WireMessage, create_transport
from .memory import InMemoryRelay, InMemoryTransport
from .relay import RelayServer
from .websocket import WebSocketTransport

__all__ = [
    "MSG_GET",
    "MSG_PUT",
    "InMemoryRelay",
    "InMemoryTransport",
    "RelayServer",
    "Transport",
    "WebSocketTransport",
    "WireMessage",
    "create_transport",
]
