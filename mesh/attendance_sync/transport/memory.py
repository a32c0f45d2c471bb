"""
In-memory relay and transport for tests and local development.

InMemoryRelay plays the part of a relay process inside one interpreter:
every frame a transport sends is rebroadcast to every other attached
transport, and recent put frames are buffered and replayed to transports
that attach later.

Invariants:
    - All data is lost on process exit
    - Frames go through the JSON codec, exactly as over a real socket
    - Each transport delivers inbound frames in arrival order

How to change safely:
    - This is test-support code; keep it interface-compatible with Transport
    - Add helpers for failure scenarios rather than special cases in the sync layer
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import ClassVar, Dict, List, Optional

from ..errors import MalformedInputError, TransportClosedError, TransportError
from .base import MSG_PUT, ConnectHandler, MessageHandler, WireMessage

logger = logging.getLogger(__name__)


class InMemoryRelay:
    """Rebroadcasting hub for InMemoryTransport instances.

    Attributes:
        buffer_size: Number of recent put frames replayed to new transports
        name: Address reported to on_connect handlers
        frame_log_size: Number of recent frames kept for get_all_frames()

    Example:
        >>> relay = InMemoryRelay()
        >>> admin = InMemoryTransport(relay, peer_id="admin")
        >>> student = InMemoryTransport(relay, peer_id="student")
    """

    _default: ClassVar[Optional[InMemoryRelay]] = None

    def __init__(
        self,
        buffer_size: int = 1000,
        name: str = "memory://relay",
        frame_log_size: int = 1000,
    ) -> None:
        self.buffer_size = buffer_size
        self.name = name
        self.frame_log_size = frame_log_size
        self._transports: Dict[str, InMemoryTransport] = {}
        self._buffer: deque = deque(maxlen=buffer_size)
        self._frames: deque = deque(maxlen=frame_log_size)
        self._frame_count = 0

    @classmethod
    def default(cls) -> InMemoryRelay:
        """Process-wide relay used when none is passed explicitly."""
        if cls._default is None:
            cls._default = cls()
        return cls._default

    def attach(self, transport: InMemoryTransport) -> None:
        self._transports[transport.peer_id] = transport
        for frame in list(self._buffer):
            transport._deliver(frame)
        logger.debug(
            "Transport attached to in-memory relay",
            extra={"peer_id": transport.peer_id, "replayed": len(self._buffer)},
        )

    def detach(self, transport: InMemoryTransport) -> None:
        if self._transports.get(transport.peer_id) is transport:
            del self._transports[transport.peer_id]

    def broadcast(self, sender: InMemoryTransport, frame: str) -> int:
        """Rebroadcast a frame to every other transport.

        Returns:
            Number of transports the frame was delivered to
        """
        self._frames.append(frame)
        self._frame_count += 1
        if self.buffer_size and json.loads(frame).get("type") == MSG_PUT:
            self._buffer.append(frame)

        delivered = 0
        for peer_id, transport in list(self._transports.items()):
            if transport is sender:
                continue
            transport._deliver(frame)
            delivered += 1
        return delivered

    @property
    def peer_ids(self) -> List[str]:
        return list(self._transports)

    # Testing helpers

    def get_all_frames(self) -> List[WireMessage]:
        """The most recent frame_log_size relayed frames, decoded (testing helper)."""
        return [WireMessage.decode(frame) for frame in self._frames]

    def get_frame_count(self) -> int:
        """Frames relayed since creation or the last clear()."""
        return self._frame_count

    def clear(self) -> None:
        """Forget relayed and buffered frames (testing helper)."""
        self._frames.clear()
        self._frame_count = 0
        self._buffer.clear()


class InMemoryTransport:
    """Transport attached to an InMemoryRelay.

    Thread safety:
        Designed for a single event loop. Inbound frames are queued and
        handled by one reader task, so handlers never run concurrently.

    Example:
        >>> transport = InMemoryTransport(relay, peer_id="admin")
        >>> transport.set_handlers(on_message, on_connect)
        >>> await transport.connect()
    """

    def __init__(self, relay: InMemoryRelay, peer_id: str) -> None:
        self.relay = relay
        self.peer_id = peer_id
        self._on_message: Optional[MessageHandler] = None
        self._on_connect: Optional[ConnectHandler] = None
        self._connected = False
        self._inbox: Optional[asyncio.Queue] = None
        self._reader: Optional[asyncio.Task] = None
        self._fail_sends = False
        self.sent_count = 0
        self.received_count = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    def set_handlers(
        self,
        on_message: MessageHandler,
        on_connect: Optional[ConnectHandler] = None,
    ) -> None:
        self._on_message = on_message
        self._on_connect = on_connect

    async def connect(self) -> None:
        """Attach to the relay and start the reader task."""
        if self._connected:
            return
        self._inbox = asyncio.Queue()
        self._reader = asyncio.create_task(self._read_loop())
        self._connected = True
        self.relay.attach(self)
        logger.debug("InMemoryTransport connected", extra={"peer_id": self.peer_id})

        if self._on_connect is not None:
            await self._on_connect(self.relay.name)

    async def close(self) -> None:
        """Detach from the relay and stop the reader task."""
        if not self._connected:
            return
        self._connected = False
        self.relay.detach(self)
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self._inbox = None
        logger.debug("InMemoryTransport closed", extra={"peer_id": self.peer_id})

    async def send(self, message: WireMessage) -> None:
        if not self._connected:
            raise TransportClosedError("Not connected", address=self.relay.name)
        if self._fail_sends:
            raise TransportError("Injected send failure", address=self.relay.name)
        self.relay.broadcast(self, message.encode())
        self.sent_count += 1

    def _deliver(self, frame: str) -> None:
        if self._inbox is not None:
            self._inbox.put_nowait(frame)

    async def _read_loop(self) -> None:
        assert self._inbox is not None
        inbox = self._inbox
        while True:
            frame = await inbox.get()
            try:
                await self._handle_frame(frame)
            finally:
                inbox.task_done()

    async def _handle_frame(self, frame: str) -> None:
        try:
            message = WireMessage.decode(frame)
        except MalformedInputError as e:
            logger.warning(f"Discarding malformed frame: {e}", extra={"peer_id": self.peer_id})
            return
        self.received_count += 1
        if self._on_message is not None:
            try:
                await self._on_message(message)
            except Exception as e:
                logger.error(f"Message handler failed: {e}", exc_info=True)

    # Testing helpers

    async def disconnect(self) -> None:
        """Simulate a dropped connection (handlers are kept)."""
        await self.close()

    async def reconnect(self) -> None:
        """Simulate the connection coming back."""
        await self.connect()

    def inject_send_failures(self, enabled: bool = True) -> None:
        """Make send() raise TransportError until disabled (testing helper)."""
        self._fail_sends = enabled

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait until every delivered frame has been handled (testing helper)."""
        if self._inbox is not None:
            await asyncio.wait_for(self._inbox.join(), timeout=timeout)
