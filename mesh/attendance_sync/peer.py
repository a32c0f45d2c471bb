"""
Peer orchestrator.

A Peer wires together everything one participant (admin or student
browser, or a headless client) runs locally:
- GraphStore (optionally backed by a SQLite log)
- SubscriptionEngine
- SyncLayer over a Transport
- The participant's Identity

Invariants:
    - Persisted states are loaded before the transport connects, so the
      first get answers already include them
    - stop() closes components in reverse start order

How to change safely:
    - Add new components with enable/disable flags in PeerConfig
    - Test start/stop twice in a row; both must be idempotent
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path as FsPath

from .config import PeerConfig
from .errors import IdentityError
from .graph.persistence import SqliteGraphLog
from .graph.store import GraphStore
from .identity.keys import Identity, ScopedWriter
from .subscribe.engine import SubscriptionEngine
from .sync.layer import SyncLayer
from .transport.base import Transport, create_transport
from .transport.memory import InMemoryRelay

logger = logging.getLogger(__name__)


class Peer:
    """One participant in the sync mesh.

    Attributes:
        config: Peer configuration
        identity: Keypair used for namespace writes (None for anonymous peers)
        store: Local graph store
        engine: Subscription engine over the store
        sync: Sync layer over the transport

    Example:
        >>> relay = InMemoryRelay()
        >>> admin = Peer(identity=Identity.generate(), relay=relay)
        >>> await admin.start()
        >>> admin.writer().put(("class_list", "101"), {"studentId": "101", "name": "Alice"})
        >>> await admin.stop()
    """

    def __init__(
        self,
        config: PeerConfig | None = None,
        identity: Identity | None = None,
        transport: Transport | None = None,
        relay: InMemoryRelay | None = None,
    ) -> None:
        """Initialize the peer.

        Args:
            config: Peer configuration (defaults: memory transport, no persistence)
            identity: Keypair; loaded from IDENTITY_KEY_FILE when configured
            transport: Explicit transport (built from config if not provided)
            relay: In-process relay for the memory transport backend
        """
        self.config = config or PeerConfig()
        self.peer_id = self.config.peer_id or f"peer-{uuid.uuid4().hex[:12]}"

        if identity is None and self.config.identity.key_file:
            identity = Identity.load_or_create(
                self.config.identity.key_file, alias=self.config.identity.alias
            )
        self.identity = identity

        self.persistence: SqliteGraphLog | None = None
        if self.config.storage.persist_enabled:
            data_dir = FsPath(self.config.storage.data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)
            self.persistence = SqliteGraphLog(
                self.config.storage.db_path(self.peer_id),
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
            )

        self.store = GraphStore(peer_id=self.peer_id, persistence=self.persistence)
        self.engine = SubscriptionEngine(self.store)
        self.transport = transport or create_transport(
            self.config.transport, peer_id=self.peer_id, relay=relay
        )
        self.sync = SyncLayer(
            self.store,
            self.transport,
            engine=self.engine,
            strict_signatures=self.config.transport.strict_signatures,
            forward_remote=self.config.transport.forward_remote,
            outbox_limit=self.config.transport.outbox_limit,
        )
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def writer(self) -> ScopedWriter:
        """Signed writer into this peer's identity namespace.

        Raises:
            IdentityError: If the peer has no signing identity
        """
        if self.identity is None:
            raise IdentityError("Peer has no identity")
        return ScopedWriter(self.store, self.identity)

    async def start(self) -> None:
        """Load local state and connect to peers."""
        if self._running:
            logger.warning("Peer already running", extra={"peer_id": self.peer_id})
            return

        logger.info(
            "Starting peer",
            extra={
                "peer_id": self.peer_id,
                "pub": self.identity.pub if self.identity else None,
                "persist": self.persistence is not None,
            },
        )
        if self.persistence is not None:
            self.persistence.open()
            self.store.load()

        await self.sync.start()
        self._running = True

    async def stop(self) -> None:
        """Disconnect and release local resources."""
        if not self._running:
            return

        await self.sync.stop()
        self.engine.close()
        if self.persistence is not None:
            self.persistence.close()

        self._running = False
        logger.info("Peer stopped", extra={"peer_id": self.peer_id})

    async def __aenter__(self) -> Peer:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def stats(self) -> dict:
        return {
            "store": self.store.stats,
            "subscriptions": self.engine.stats,
            "sync": self.sync.stats,
        }
