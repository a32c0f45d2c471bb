"""
Relay server - rebroadcasting websocket hub.

A relay has no business logic: every frame a peer sends on ``/sync`` is
forwarded to every other connected peer. Recent put frames are kept in a
bounded buffer and replayed to peers that connect later, which is the only
durability a relay offers.

Endpoints:
    GET /sync    - websocket; text frames in, text frames out
    GET /health  - JSON status (connected peers, buffered and relayed frames)

Invariants:
    - A frame is never echoed back to the connection that sent it
    - Frames that are not JSON objects are dropped, not relayed
    - The replay buffer never exceeds buffer_size frames

How to change safely:
    - Do not decode fields or merge here; peers own all state
    - Keep /health cheap; it is polled by orchestration
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections import deque
from collections.abc import Callable
from typing import Any, Dict, Optional

from aiohttp import WSMsgType, web

from .base import MSG_PUT

logger = logging.getLogger(__name__)


class RelayServer:
    """aiohttp application that rebroadcasts peer frames.

    Example:
        >>> relay = RelayServer(host="0.0.0.0", port=8765, buffer_size=1000)
        >>> await relay.start()
        >>> ...
        >>> await relay.stop()
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8765,
        buffer_size: int = 1000,
        heartbeat: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.buffer_size = buffer_size
        self.heartbeat = heartbeat
        self._peers: Dict[int, web.WebSocketResponse] = {}
        self._buffer: deque = deque(maxlen=buffer_size)
        self._connection_ids = itertools.count(1)
        self._runner: Optional[web.AppRunner] = None

        self._relayed_count = 0
        self._dropped_count = 0

    def create_app(self) -> web.Application:
        """Build the aiohttp application (also used directly by tests)."""
        app = web.Application(middlewares=[_error_middleware])
        app.router.add_get("/sync", self.handle_sync)
        app.router.add_get("/health", self.handle_health)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def handle_sync(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=self.heartbeat)
        await ws.prepare(request)

        connection_id = next(self._connection_ids)
        self._peers[connection_id] = ws
        logger.info(
            "Peer connected",
            extra={"connection_id": connection_id, "remote": request.remote, "peers": len(self._peers)},
        )

        try:
            for frame in list(self._buffer):
                await ws.send_str(frame)

            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._relay(connection_id, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        f"Peer socket error: {ws.exception()}",
                        extra={"connection_id": connection_id},
                    )
        finally:
            self._peers.pop(connection_id, None)
            logger.info(
                "Peer disconnected",
                extra={"connection_id": connection_id, "peers": len(self._peers)},
            )

        return ws

    async def _relay(self, sender_id: int, frame: str) -> None:
        try:
            data = json.loads(frame)
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            self._dropped_count += 1
            logger.warning("Dropping non-JSON frame", extra={"connection_id": sender_id})
            return

        if self.buffer_size and data.get("type") == MSG_PUT:
            self._buffer.append(frame)

        for connection_id, ws in list(self._peers.items()):
            if connection_id == sender_id or ws.closed:
                continue
            try:
                await ws.send_str(frame)
            except (ConnectionResetError, RuntimeError) as e:
                logger.warning(
                    f"Relay to peer failed: {e}", extra={"connection_id": connection_id}
                )
        self._relayed_count += 1

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(self.stats)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "peers": len(self._peers),
            "buffered": len(self._buffer),
            "relayed": self._relayed_count,
            "dropped": self._dropped_count,
        }

    async def _on_shutdown(self, app: web.Application) -> None:
        for ws in list(self._peers.values()):
            await ws.close(code=1001, message=b"Relay shutting down")

    async def start(self) -> None:
        """Bind and start serving."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"Relay running on ws://{self.host}:{self.port}/sync")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Relay stopped")


@web.middleware
async def _error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    try:
        return await handler(request)
    except (web.HTTPException, asyncio.CancelledError):
        raise
    except Exception as e:
        logger.error(f"Relay handler error: {e}", exc_info=True)
        return web.json_response({"error": str(e), "error_code": "INTERNAL"}, status=500)
