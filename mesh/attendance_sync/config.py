"""
Configuration management for attendance-sync peers and relays.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - No relay endpoint is built in; RELAY_PEERS must name them explicitly
    - Private key material is never logged

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep from_env() the only place that reads os.environ
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class TransportBackend(Enum):
    """Supported transport backends."""

    MEMORY = "memory"
    WEBSOCKET = "websocket"


@dataclass(frozen=True)
class IdentityConfig:
    """Identity keypair configuration.

    Attributes:
        key_file: PEM file holding the private key (generated on first use);
            None means an ephemeral identity per process
        alias: Display name, never used for addressing
    """

    key_file: str | None = None
    alias: str | None = None

    @classmethod
    def from_env(cls) -> IdentityConfig:
        """Load configuration from environment variables."""
        return cls(
            key_file=os.getenv("IDENTITY_KEY_FILE"),
            alias=os.getenv("IDENTITY_ALIAS"),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for per-peer SQLite logs
        db_pattern: Pattern for the log file name
        persist_enabled: Whether accepted states are mirrored to SQLite
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "./data"
    db_pattern: str = "peer_{peer_id}.db"
    persist_enabled: bool = False
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "./data"),
            db_pattern=os.getenv("PEER_DB_PATTERN", "peer_{peer_id}.db"),
            persist_enabled=_env_bool("PERSIST_ENABLED", "false"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )

    def db_path(self, peer_id: str) -> str:
        return os.path.join(self.data_dir, self.db_pattern.format(peer_id=peer_id))


@dataclass(frozen=True)
class TransportConfig:
    """Peer transport configuration.

    Attributes:
        backend: Which transport to use
        relay_peers: Relay websocket URLs (websocket backend)
        reconnect_interval_seconds: Fixed delay between reconnect attempts
        heartbeat_seconds: Websocket ping interval
        outbox_limit: Messages kept while disconnected
        forward_remote: Re-publish applied remote fields (direct peer mesh)
        strict_signatures: Accept writes into ``~pub`` only with valid signatures
    """

    backend: TransportBackend = TransportBackend.MEMORY
    relay_peers: tuple[str, ...] = ()
    reconnect_interval_seconds: float = 5.0
    heartbeat_seconds: float = 30.0
    outbox_limit: int = 10000
    forward_remote: bool = False
    strict_signatures: bool = False

    @classmethod
    def from_env(cls) -> TransportConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If TRANSPORT_BACKEND is not a known backend
        """
        backend_str = os.getenv("TRANSPORT_BACKEND", "memory").lower()
        try:
            backend = TransportBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid TRANSPORT_BACKEND '{backend_str}'. Must be one of: memory, websocket"
            )

        peers = os.getenv("RELAY_PEERS", "")
        return cls(
            backend=backend,
            relay_peers=tuple(p.strip() for p in peers.split(",") if p.strip()),
            reconnect_interval_seconds=float(os.getenv("RECONNECT_INTERVAL_SECONDS", "5")),
            heartbeat_seconds=float(os.getenv("HEARTBEAT_SECONDS", "30")),
            outbox_limit=int(os.getenv("OUTBOX_LIMIT", "10000")),
            forward_remote=_env_bool("FORWARD_REMOTE", "false"),
            strict_signatures=_env_bool("STRICT_SIGNATURES", "false"),
        )


@dataclass(frozen=True)
class RelayConfig:
    """Relay process configuration.

    Attributes:
        bind_address: Address to bind the relay (host:port)
        buffer_size: Recent put frames replayed to late joiners
    """

    bind_address: str = "0.0.0.0:8765"
    buffer_size: int = 1000

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from environment variables."""
        return cls(
            bind_address=os.getenv("RELAY_BIND", "0.0.0.0:8765"),
            buffer_size=int(os.getenv("RELAY_BUFFER_SIZE", "1000")),
        )

    @property
    def host(self) -> str:
        return self.bind_address.rsplit(":", 1)[0]

    @property
    def port(self) -> int:
        return int(self.bind_address.rsplit(":", 1)[1])


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class PeerConfig:
    """Complete peer configuration.

    Attributes:
        peer_id: Writer id of this peer (generated when empty)
        identity: Identity keypair configuration
        storage: Local storage configuration
        transport: Transport configuration
        relay: Relay process configuration
        observability: Logging configuration
    """

    peer_id: str | None = None
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> PeerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            peer_id=os.getenv("PEER_ID") or None,
            identity=IdentityConfig.from_env(),
            storage=StorageConfig.from_env(),
            transport=TransportConfig.from_env(),
            relay=RelayConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.transport.backend == TransportBackend.WEBSOCKET:
            if not self.transport.relay_peers:
                raise ValueError("RELAY_PEERS is required when TRANSPORT_BACKEND=websocket")
            for url in self.transport.relay_peers:
                if not url.startswith(("ws://", "wss://")):
                    raise ValueError(f"Relay URL must start with ws:// or wss://: {url}")

        if self.transport.reconnect_interval_seconds <= 0:
            raise ValueError("RECONNECT_INTERVAL_SECONDS must be positive")
        if self.transport.outbox_limit < 1:
            raise ValueError("OUTBOX_LIMIT must be at least 1")
        if self.relay.buffer_size < 0:
            raise ValueError("RELAY_BUFFER_SIZE must not be negative")

        if ":" not in self.relay.bind_address:
            raise ValueError(f"RELAY_BIND must be host:port, got '{self.relay.bind_address}'")
        try:
            self.relay.port
        except ValueError:
            raise ValueError(f"RELAY_BIND port is not a number: '{self.relay.bind_address}'")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be json or text")

        if self.storage.persist_enabled and not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (never the private key)."""
        logger.info(
            "Peer configuration loaded",
            extra={
                "peer_id": self.peer_id,
                "transport_backend": self.transport.backend.value,
                "relay_peers": list(self.transport.relay_peers),
                "strict_signatures": self.transport.strict_signatures,
                "forward_remote": self.transport.forward_remote,
                "relay_bind": self.relay.bind_address,
                "persist_enabled": self.storage.persist_enabled,
                "data_dir": self.storage.data_dir,
                "identity_key_file": self.identity.key_file,
                "log_level": self.observability.log_level,
            },
        )
