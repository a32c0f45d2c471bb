"""
attendance-sync relay node - main entry point.

This module starts a relay process: an aiohttp websocket hub that
rebroadcasts frames between peers and keeps a bounded replay buffer for
late joiners. Peers (admin and student clients) connect to it through
WebSocketTransport.

Usage:
    python -m mesh.attendance_sync.main
    attendance-relay

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The relay holds no graph state and applies no business rules
    - Graceful shutdown closes every peer socket before exiting

How to change safely:
    - Keep peer-side logic out of this process
    - Test the shutdown sequence with connected peers
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .config import PeerConfig
from .transport.relay import RelayServer

logger = logging.getLogger(__name__)


def setup_logging(config: PeerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Peer configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.server").setLevel(logging.WARNING)


class RelayNode:
    """Relay process orchestrator.

    Example:
        >>> node = RelayNode()
        >>> await node.start()  # Runs until request_shutdown()
        >>> await node.stop()
    """

    def __init__(self, config: PeerConfig | None = None) -> None:
        self.config = config or PeerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()
        self.relay: RelayServer | None = None

    async def start(self) -> None:
        """Start the relay and wait for a shutdown request."""
        if self._running:
            logger.warning("Relay node already running")
            return

        logger.info("Starting relay node")
        self.config.log_config()

        try:
            self.relay = RelayServer(
                host=self.config.relay.host,
                port=self.config.relay.port,
                buffer_size=self.config.relay.buffer_size,
                heartbeat=self.config.transport.heartbeat_seconds,
            )
            await self.relay.start()
            self._running = True
            logger.info("Relay node started successfully")

            await self._shutdown_event.wait()
        except Exception as e:
            logger.error(f"Relay startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the relay gracefully."""
        if self.relay is None:
            return

        logger.info("Stopping relay node")
        await self.relay.stop()
        self.relay = None
        self._running = False
        logger.info("Relay node stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = PeerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    node = RelayNode(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        node.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(node.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(node.stop())
        loop.close()


if __name__ == "__main__":
    main()
