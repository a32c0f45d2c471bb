"""
WebSocket transport backed by aiohttp.

Opens one websocket per configured relay URL. Each connection has its own
task that connects, reads frames until the socket closes, then waits a
fixed interval and reconnects.

Invariants:
    - on_connect fires after every successful (re)connection
    - Inbound frames from one relay are handled in arrival order
    - Malformed frames are logged and dropped; they never close the socket

How to change safely:
    - Reconnect policy lives here, not in the sync layer
    - Keep send() non-fatal per relay: one dead relay must not block the rest
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

import aiohttp

from ..errors import (
    MalformedInputError,
    TransportClosedError,
    TransportConnectionError,
    TransportError,
)
from .base import ConnectHandler, MessageHandler, WireMessage

logger = logging.getLogger(__name__)


class WebSocketTransport:
    """Client transport to one or more relays.

    Example:
        >>> transport = WebSocketTransport(
        ...     ["ws://relay-a:8765/sync", "ws://relay-b:8765/sync"],
        ...     peer_id="admin",
        ... )
        >>> transport.set_handlers(sync.on_remote_write, sync.on_connect)
        >>> await transport.connect()
    """

    def __init__(
        self,
        urls: List[str],
        peer_id: str,
        reconnect_interval: float = 5.0,
        heartbeat: float = 30.0,
    ) -> None:
        self.urls = list(urls)
        self.peer_id = peer_id
        self.reconnect_interval = reconnect_interval
        self.heartbeat = heartbeat
        self._on_message: Optional[MessageHandler] = None
        self._on_connect: Optional[ConnectHandler] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._sockets: Dict[str, aiohttp.ClientWebSocketResponse] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._closing = False
        self._connected_event = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return bool(self._sockets)

    @property
    def connected_urls(self) -> List[str]:
        return list(self._sockets)

    def set_handlers(
        self,
        on_message: MessageHandler,
        on_connect: Optional[ConnectHandler] = None,
    ) -> None:
        self._on_message = on_message
        self._on_connect = on_connect

    async def connect(self) -> None:
        """Start one connection task per relay URL.

        Returns immediately; connections come up in the background.

        Raises:
            TransportConnectionError: If no relay URL is configured
        """
        if not self.urls:
            raise TransportConnectionError("No relay URLs configured")
        if self._session is not None:
            return

        self._closing = False
        self._session = aiohttp.ClientSession()
        for url in self.urls:
            self._tasks[url] = asyncio.create_task(self._run(url))
        logger.info("WebSocket transport started", extra={"relays": self.urls})

    async def wait_connected(self, timeout: float = 10.0) -> None:
        """Wait until at least one relay connection is up.

        Raises:
            TransportConnectionError: If nothing connects within timeout
        """
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransportConnectionError(
                f"No relay reachable within {timeout}s", address=",".join(self.urls)
            ) from e

    async def _run(self, url: str) -> None:
        assert self._session is not None
        while not self._closing:
            try:
                async with self._session.ws_connect(url, heartbeat=self.heartbeat) as ws:
                    self._sockets[url] = ws
                    self._connected_event.set()
                    logger.info("Connected to relay", extra={"url": url})

                    if self._on_connect is not None:
                        try:
                            await self._on_connect(url)
                        except Exception as e:
                            logger.error(f"Connect handler failed: {e}", exc_info=True)

                    async for msg in ws:
                        if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                            await self._handle_frame(url, msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.warning(
                                f"Relay socket error: {ws.exception()}", extra={"url": url}
                            )
                            break
            except (aiohttp.ClientError, OSError) as e:
                logger.warning(f"Relay connection failed: {e}", extra={"url": url})
            finally:
                self._sockets.pop(url, None)
                if not self._sockets:
                    self._connected_event.clear()

            if self._closing:
                break
            logger.info(
                "Reconnecting to relay",
                extra={"url": url, "interval": self.reconnect_interval},
            )
            await asyncio.sleep(self.reconnect_interval)

    async def _handle_frame(self, url: str, frame: str | bytes) -> None:
        try:
            message = WireMessage.decode(frame)
        except MalformedInputError as e:
            logger.warning(f"Discarding malformed frame: {e}", extra={"url": url})
            return
        if self._on_message is None:
            return
        try:
            await self._on_message(message)
        except Exception as e:
            logger.error(f"Message handler failed: {e}", exc_info=True)

    async def send(self, message: WireMessage) -> None:
        if not self._sockets:
            raise TransportClosedError("No relay connected", address=",".join(self.urls))

        frame = message.encode()
        failures = []
        targets = list(self._sockets.items())
        for url, ws in targets:
            try:
                await ws.send_str(frame)
            except (ConnectionResetError, aiohttp.ClientError, RuntimeError) as e:
                failures.append(url)
                logger.warning(f"Send to relay failed: {e}", extra={"url": url})

        if len(failures) == len(targets):
            raise TransportError("Send failed on every relay", address=",".join(failures))

    async def close(self) -> None:
        self._closing = True
        for ws in list(self._sockets.values()):
            await ws.close()
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self._sockets.clear()
        self._connected_event.clear()

        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("WebSocket transport closed")
