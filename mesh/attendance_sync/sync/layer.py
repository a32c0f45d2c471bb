"""
Sync layer - moves field states between the local store and peers.

The SyncLayer listens to the GraphStore and publishes every local write
as a put message; it feeds every inbound put through the store's merge
path and answers inbound get requests from stored states.

Delivery model:
    - At-least-once to peers that are connected while a write happens
    - While disconnected, outbound messages wait in a bounded outbox that is
      flushed on the next connection event, followed by fresh get requests
      for every watched path
    - No backoff or active retry here; reconnecting is the transport's job

Invariants:
    - Remote states keep their original ts and writer, so duplicates and
      reordering converge (the store merge is idempotent)
    - Fields that lose the merge are never re-broadcast
    - A message id is processed at most once (bounded LRU of seen ids)
    - Transport errors never propagate to writers

How to change safely:
    - Listener code runs under the store lock: only schedule sends there
    - Keep the wire format backward compatible (see transport.base)
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping

from ..errors import TransportError
from ..graph.path import Path, PathLike, make_path, namespace_of, to_text
from ..graph.store import ORIGIN_LOCAL, ORIGIN_REMOTE, ChangeEvent, GraphStore
from ..identity.keys import verify_put
from ..merge.resolver import ConflictDropped, FieldState
from ..transport.base import MSG_GET, MSG_PUT, Transport, WireMessage

if TYPE_CHECKING:
    from ..subscribe.engine import SubscriptionEngine

logger = logging.getLogger(__name__)


@dataclass
class RemoteWriteResult:
    """Outcome of handling one inbound message.

    Attributes:
        message: The inbound message
        applied: Field states stored locally
        dropped: Field states that lost last-write-wins
        rejected: Field names refused for a missing or bad signature
        skipped: Message was a duplicate, our own echo or a get request
    """
    message: WireMessage
    applied: dict[str, FieldState] = field(default_factory=dict)
    dropped: list[ConflictDropped] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    skipped: bool = False


class SyncLayer:
    """Bridges a GraphStore and a Transport.

    Thread safety:
        Local writes may happen on any thread; sends are always performed
        by one sender task on the event loop start() ran on.

    Example:
        >>> sync = SyncLayer(store, transport, engine=engine)
        >>> await sync.start()
        >>> await sync.request(("~" + admin_pub, APP_NAMESPACE, "class_list"), children=True)
    """

    def __init__(
        self,
        store: GraphStore,
        transport: Transport,
        engine: SubscriptionEngine | None = None,
        strict_signatures: bool = False,
        forward_remote: bool = False,
        outbox_limit: int = 10000,
        seen_limit: int = 10000,
    ) -> None:
        """Initialize the sync layer.

        Args:
            store: Local graph store
            transport: Peer transport
            engine: Subscription engine whose handles are re-requested on reconnect
            strict_signatures: Accept writes into ``~pub`` only with valid signatures
            forward_remote: Re-publish applied remote fields (direct peer mesh)
            outbox_limit: Messages kept while disconnected (oldest dropped first)
            seen_limit: Message ids remembered for duplicate suppression
        """
        self.store = store
        self.transport = transport
        self.engine = engine
        self.strict_signatures = strict_signatures
        self.forward_remote = forward_remote
        self.outbox_limit = outbox_limit
        self.seen_limit = seen_limit

        self._outbox: deque[WireMessage] = deque(maxlen=outbox_limit)
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._interests: dict[tuple[Path, bool], None] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._send_queue: asyncio.Queue | None = None
        self._sender: asyncio.Task | None = None
        self._running = False

        self._published_count = 0
        self._received_count = 0
        self._applied_count = 0
        self._dropped_count = 0
        self._rejected_count = 0
        self._duplicate_count = 0
        self._overflow_count = 0

        transport.set_handlers(self.on_remote_write, self.on_connect)

    @property
    def peer_id(self) -> str:
        return self.store.peer_id

    # Lifecycle

    async def start(self) -> None:
        """Attach to the store and connect the transport."""
        if self._running:
            logger.warning("Sync layer already running")
            return

        self._loop = asyncio.get_running_loop()
        self._send_queue = asyncio.Queue()
        self._sender = asyncio.create_task(self._send_loop())
        self._running = True
        self.store.add_listener(self._on_store_change)

        logger.info(
            "Starting sync layer",
            extra={
                "peer_id": self.peer_id,
                "strict_signatures": self.strict_signatures,
                "forward_remote": self.forward_remote,
            },
        )
        try:
            await self.transport.connect()
        except TransportError as e:
            logger.warning(f"Transport did not connect: {e}", extra={"peer_id": self.peer_id})

    async def stop(self) -> None:
        """Detach from the store and close the transport."""
        if not self._running:
            return
        self._running = False
        self.store.remove_listener(self._on_store_change)

        if self._sender is not None:
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass
            self._sender = None

        await self.transport.close()
        logger.info("Sync layer stopped", extra={"peer_id": self.peer_id, **self.stats})

    # Outbound

    def _on_store_change(self, event: ChangeEvent) -> None:
        if event.origin == ORIGIN_LOCAL:
            message = WireMessage(MSG_PUT, event.path, self.peer_id, fields=dict(event.applied))
        elif event.origin == ORIGIN_REMOTE and self.forward_remote and "message_id" in event.context:
            message = WireMessage(
                MSG_PUT,
                event.path,
                event.context.get("origin", self.peer_id),
                fields=dict(event.applied),
                id=event.context["message_id"],
            )
        else:
            return
        self._schedule(message)

    def _schedule(self, message: WireMessage) -> None:
        if self._loop is None or self._send_queue is None or not self._running:
            self._queue_outbox(message)
            return
        self._loop.call_soon_threadsafe(self._send_queue.put_nowait, message)

    async def _send_loop(self) -> None:
        assert self._send_queue is not None
        queue = self._send_queue
        while True:
            message = await queue.get()
            try:
                await self._send(message)
            except Exception as e:
                logger.error(f"Unexpected send failure: {e}", exc_info=True)
            finally:
                queue.task_done()

    async def _send(self, message: WireMessage) -> bool:
        self._mark_seen(message.id)
        if not self.transport.is_connected:
            self._queue_outbox(message)
            return False
        try:
            await self.transport.send(message)
        except TransportError as e:
            logger.warning(
                f"Send failed, message queued: {e}",
                extra={"peer_id": self.peer_id, "path": to_text(message.path)},
            )
            self._queue_outbox(message)
            return False

        if message.type == MSG_PUT:
            self._published_count += 1
        return True

    def _queue_outbox(self, message: WireMessage) -> None:
        if len(self._outbox) == self._outbox.maxlen:
            self._overflow_count += 1
            logger.warning(
                "Outbox full, dropping oldest message",
                extra={"peer_id": self.peer_id, "outbox_limit": self.outbox_limit},
            )
        self._outbox.append(message)

    async def publish(self, path: PathLike, states: Mapping[str, FieldState]) -> bool:
        """Send field states to every connected peer.

        Returns:
            True if sent now, False if queued for the next connection
        """
        message = WireMessage(MSG_PUT, make_path(path), self.peer_id, fields=dict(states))
        return await self._send(message)

    async def request(self, path: PathLike, children: bool = False) -> None:
        """Ask peers for a node (or a prefix's direct children).

        The request is remembered and re-issued on every reconnection.
        """
        node_path = make_path(path)
        self._interests[(node_path, children)] = None
        await self._send(WireMessage(MSG_GET, node_path, self.peer_id, children=children))

    def forget(self, path: PathLike, children: bool = False) -> None:
        self._interests.pop((make_path(path), children), None)

    async def on_connect(self, address: str) -> None:
        """Flush the outbox and re-request watched paths."""
        flushed = 0
        while self._outbox and self.transport.is_connected:
            message = self._outbox.popleft()
            if not await self._send(message):
                break
            flushed += 1

        watched = dict(self._interests)
        if self.engine is not None:
            for handle in self.engine.active_handles:
                watched[(handle.path, handle.children)] = None
        for node_path, children in watched:
            await self._send(WireMessage(MSG_GET, node_path, self.peer_id, children=children))

        logger.info(
            "Connected to peers",
            extra={
                "peer_id": self.peer_id,
                "address": address,
                "flushed": flushed,
                "requested": len(watched),
                "queued": len(self._outbox),
            },
        )

    # Inbound

    def _mark_seen(self, message_id: str) -> bool:
        """Record a message id; returns False if it was already seen."""
        if message_id in self._seen:
            self._seen.move_to_end(message_id)
            return False
        self._seen[message_id] = None
        while len(self._seen) > self.seen_limit:
            self._seen.popitem(last=False)
        return True

    async def on_remote_write(self, message: WireMessage) -> RemoteWriteResult:
        """Handle one inbound message from a peer.

        Puts are verified (strict mode) and merged into the store; gets are
        answered with put messages built from stored states.
        """
        result = RemoteWriteResult(message=message)
        if message.origin == self.peer_id or not self._mark_seen(message.id):
            self._duplicate_count += 1
            result.skipped = True
            return result

        self._received_count += 1
        if message.type == MSG_GET:
            await self._answer_get(message)
            result.skipped = True
            return result

        states = dict(message.fields)
        pub = namespace_of(message.path)
        if self.strict_signatures and pub is not None:
            accepted, rejected = verify_put(pub, message.path, states)
            if rejected:
                self._rejected_count += len(rejected)
                result.rejected = rejected
                logger.warning(
                    "Rejected unsigned namespace write",
                    extra={
                        "path": to_text(message.path),
                        "fields": rejected,
                        "origin": message.origin,
                    },
                )
            states = {name: states[name] for name in accepted}

        if not states:
            return result

        put_result = self.store.merge_remote(
            message.path,
            states,
            context={"message_id": message.id, "origin": message.origin},
        )
        result.applied = put_result.applied
        result.dropped = put_result.dropped
        self._applied_count += len(put_result.applied)
        self._dropped_count += len(put_result.dropped)
        return result

    async def _answer_get(self, message: WireMessage) -> None:
        if message.children:
            targets = self.store.child_paths(message.path)
        else:
            targets = [message.path]

        answered = 0
        for node_path in targets:
            states = self.store.states(node_path)
            if states:
                await self._send(WireMessage(MSG_PUT, node_path, self.peer_id, fields=states))
                answered += 1

        logger.debug(
            "Answered get request",
            extra={
                "path": to_text(message.path),
                "children": message.children,
                "nodes": answered,
                "origin": message.origin,
            },
        )

    async def flush(self) -> None:
        """Wait until every scheduled send has been attempted."""
        if self._send_queue is not None:
            await asyncio.sleep(0)
            await self._send_queue.join()

    @property
    def stats(self) -> dict[str, Any]:
        """Sync statistics."""
        return {
            "running": self._running,
            "connected": self.transport.is_connected,
            "published": self._published_count,
            "received": self._received_count,
            "applied": self._applied_count,
            "dropped": self._dropped_count,
            "rejected": self._rejected_count,
            "duplicates": self._duplicate_count,
            "queued": len(self._outbox),
            "overflowed": self._overflow_count,
        }
