"""
Base protocol and types for peer transports.

This module defines the Transport protocol every backend implements, the
wire message exchanged between peers, and the backend factory.

Invariants:
    - A WireMessage round-trips through to_dict()/from_dict() unchanged
    - Transports carry frames verbatim; they never inspect or merge data
    - on_connect fires on every (re)connection so the sync layer can flush
      its outbox and re-request watched paths

How to change safely:
    - Protocol changes require updating all implementations
    - New message types must be ignored (not rejected) by older peers
"""

from __future__ import annotations

import json
import logging
import uuid
from abc import abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from ..errors import MalformedInputError
from ..graph.path import Path, make_path, to_text
from ..merge.resolver import FieldState

if TYPE_CHECKING:
    from ..config import TransportConfig
    from .memory import InMemoryRelay

logger = logging.getLogger(__name__)

MSG_PUT = "put"
MSG_GET = "get"
MESSAGE_TYPES = (MSG_PUT, MSG_GET)


@dataclass
class WireMessage:
    """A frame exchanged between peers.

    Attributes:
        type: MSG_PUT (field states) or MSG_GET (request for states)
        path: Node path, or the prefix for a children request
        origin: Peer id of the peer that created the message
        fields: Field states carried by a put
        children: For gets, request the direct children of ``path``
        id: Unique message id, used to suppress duplicates and reflections

    Example:
        >>> msg = WireMessage(MSG_PUT, ("app", "n"), "peer-a",
        ...                   fields={"x": FieldState(1, 10.0, "peer-a")})
        >>> WireMessage.decode(msg.encode()).fields["x"].value
        1
    """
    type: str
    path: Path
    origin: str
    fields: Dict[str, FieldState] = field(default_factory=dict)
    children: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type,
            "id": self.id,
            "origin": self.origin,
            "path": list(self.path),
            "fields": {name: state.to_wire() for name, state in self.fields.items()},
            "children": self.children,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> WireMessage:
        """Create from dictionary.

        Raises:
            MalformedInputError: If the frame is not a valid message
        """
        if not isinstance(data, dict):
            raise MalformedInputError("Frame is not a JSON object")

        required = ["type", "id", "origin", "path"]
        missing = [f for f in required if f not in data]
        if missing:
            raise MalformedInputError(f"Missing required fields: {missing}")

        msg_type = data["type"]
        if msg_type not in MESSAGE_TYPES:
            raise MalformedInputError(f"Unknown message type: {msg_type!r}")
        if not isinstance(data["id"], str) or not isinstance(data["origin"], str):
            raise MalformedInputError("Message id and origin must be strings")

        raw_fields = data.get("fields") or {}
        if not isinstance(raw_fields, dict):
            raise MalformedInputError("Message fields must be an object")

        return cls(
            type=msg_type,
            id=data["id"],
            origin=data["origin"],
            path=make_path(data["path"]),
            fields={name: FieldState.from_wire(state) for name, state in raw_fields.items()},
            children=bool(data.get("children", False)),
        )

    def encode(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def decode(cls, frame: Union[str, bytes]) -> WireMessage:
        """Parse a JSON frame.

        Raises:
            MalformedInputError: If the frame is not valid JSON or not a message
        """
        try:
            text = frame.decode("utf-8") if isinstance(frame, bytes) else frame
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedInputError(f"Failed to parse frame as JSON: {e}") from e
        return cls.from_dict(data)

    def __str__(self) -> str:
        return f"WireMessage({self.type}, {to_text(self.path)}, id={self.id[:8]})"


MessageHandler = Callable[[WireMessage], Awaitable[None]]
ConnectHandler = Callable[[str], Awaitable[None]]


@runtime_checkable
class Transport(Protocol):
    """Protocol for peer transports.

    Delivery contract:
        - send() reaches every currently connected peer at least once
        - Nothing is promised across a disconnect; the sync layer re-sends
          its outbox and re-requests state on the next on_connect

    Example:
        >>> transport = WebSocketTransport(["ws://relay:8765/sync"], peer_id="peer-a")
        >>> transport.set_handlers(on_message, on_connect)
        >>> await transport.connect()
        >>> await transport.send(message)
    """

    @abstractmethod
    def set_handlers(
        self,
        on_message: MessageHandler,
        on_connect: Optional[ConnectHandler] = None,
    ) -> None:
        """Register the inbound message and connection callbacks."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Start connecting.

        Raises:
            TransportConnectionError: If the transport cannot start at all
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close all connections and release resources."""
        ...

    @abstractmethod
    async def send(self, message: WireMessage) -> None:
        """Send a message to every connected peer.

        Raises:
            TransportClosedError: If no connection is up
            TransportError: If every connection failed to take the frame
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether at least one connection is up."""
        ...


def create_transport(
    config: "TransportConfig",
    peer_id: str,
    relay: Optional["InMemoryRelay"] = None,
) -> Transport:
    """Factory function to create a transport from configuration.

    Args:
        config: Transport configuration
        peer_id: Local peer id
        relay: In-process relay for the memory backend (process default if omitted)

    Returns:
        Appropriate Transport implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import TransportBackend
    from .memory import InMemoryRelay, InMemoryTransport
    from .websocket import WebSocketTransport

    if config.backend == TransportBackend.MEMORY:
        return InMemoryTransport(relay or InMemoryRelay.default(), peer_id=peer_id)
    elif config.backend == TransportBackend.WEBSOCKET:
        return WebSocketTransport(
            list(config.relay_peers),
            peer_id=peer_id,
            reconnect_interval=config.reconnect_interval_seconds,
            heartbeat=config.heartbeat_seconds,
        )
    else:
        raise ValueError(f"Unsupported transport backend: {config.backend}")
