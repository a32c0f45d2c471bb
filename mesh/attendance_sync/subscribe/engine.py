"""
Subscription engine - live observers over the graph store.

Callers register a callback on one path (subscribe) or on the direct
children of a prefix (subscribe_children). The callback first sees every
existing matching node, then every write that changes a matching node,
whether the write was local or came from a peer.

Invariants:
    - Registration snapshots matching nodes and registers the handle while
      holding the store lock, so no write is missed or delivered twice
    - Each handle has one FIFO queue and at most one dispatcher task, so
      callbacks for a handle never run concurrently or out of order
    - After unsubscribe() returns (on the event loop thread) the callback
      is never invoked again, even for notifications already queued
    - Callback exceptions are logged and never reach the writer
    - subscribe() returns once the snapshot is delivered, however busy the path

How to change safely:
    - _on_change runs under the store lock: it must only enqueue
    - Do not await anything between the active check and the callback call
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import threading
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Union

from ..graph.path import Path, PathLike, make_path, parent, to_text
from ..graph.store import ChangeEvent, GraphStore, Node

logger = logging.getLogger(__name__)

Callback = Callable[[Path, Node], Union[None, Awaitable[None]]]

_handle_ids = itertools.count(1)


@dataclass(eq=False)
class SubscriptionHandle:
    """A registered observer.

    Attributes:
        handle_id: Unique id (for logging)
        path: Observed path, or the prefix for child subscriptions
        children: Whether this observes direct children of ``path``
        callback: Called with (path, node) per notification
        watermark: Greatest field timestamp delivered so far; pass it as
            ``since`` to a later subscription to replay only the delta
        delivered: Number of callback invocations
    """
    handle_id: int
    path: Path
    children: bool
    callback: Callback
    watermark: float = 0.0
    delivered: int = 0
    active: bool = True
    _queue: deque = field(default_factory=deque)
    _scheduled: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _snapshot_left: int = 0
    _snapshot_done: asyncio.Event = field(default_factory=asyncio.Event)
    _idle: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        self._idle.set()

    def __repr__(self) -> str:
        kind = "children" if self.children else "node"
        return f"SubscriptionHandle({self.handle_id}, {kind}={to_text(self.path)}, active={self.active})"


class SubscriptionEngine:
    """Dispatches store changes to registered callbacks.

    Thread safety:
        Notifications may be produced on any thread (any caller of
        GraphStore.put); dispatch always happens on the event loop the
        first subscription was registered from.

    Example:
        >>> engine = SubscriptionEngine(store)
        >>> seen = []
        >>> handle = await engine.subscribe_children(prefix, lambda p, n: seen.append(n))
        >>> engine.unsubscribe(handle)
    """

    def __init__(self, store: GraphStore) -> None:
        self.store = store
        self._exact: dict[Path, set[SubscriptionHandle]] = {}
        self._prefix: dict[Path, set[SubscriptionHandle]] = {}
        self._handles: dict[int, SubscriptionHandle] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()
        store.add_listener(self._on_change)

    # Registration

    async def subscribe(
        self,
        path: PathLike,
        callback: Callback,
        since: float | None = None,
    ) -> SubscriptionHandle:
        """Observe one node.

        The callback is invoked for the current node (if it exists and has
        a field newer than ``since``) before this coroutine returns, then
        once per change to the node.
        """
        return await self._register(make_path(path), callback, children=False, since=since)

    async def subscribe_children(
        self,
        prefix: PathLike,
        callback: Callback,
        since: float | None = None,
    ) -> SubscriptionHandle:
        """Observe every direct child of a prefix.

        The callback is invoked once per existing child (newer than
        ``since``) before this coroutine returns, then once per new child
        and per change to an existing child.
        """
        return await self._register(make_path(prefix), callback, children=True, since=since)

    async def _register(
        self,
        path: Path,
        callback: Callback,
        children: bool,
        since: float | None,
    ) -> SubscriptionHandle:
        self._loop = asyncio.get_running_loop()
        handle = SubscriptionHandle(
            handle_id=next(_handle_ids),
            path=path,
            children=children,
            callback=callback,
            watermark=since or 0.0,
        )

        with self.store.lock:
            if children:
                snapshot = [node for _, node in self.store.children(path)]
                self._prefix.setdefault(path, set()).add(handle)
            else:
                node = self.store.get(path)
                snapshot = [node] if node is not None else []
                self._exact.setdefault(path, set()).add(handle)
            self._handles[handle.handle_id] = handle

            for node in snapshot:
                if since is None or node.updated_at > since:
                    handle._snapshot_left += 1
                    self._enqueue(handle, node)
        if not handle._snapshot_left:
            handle._snapshot_done.set()

        logger.debug(
            "Subscription registered",
            extra={
                "handle_id": handle.handle_id,
                "path": to_text(path),
                "children": children,
                "snapshot": len(snapshot),
            },
        )

        # Only the snapshot is awaited; live notifications may keep arriving
        await handle._snapshot_done.wait()
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Stop a subscription.

        Idempotent and safe to call from inside any callback, including
        the handle's own. Never blocks on in-flight notifications.
        """
        with handle._lock:
            if not handle.active:
                return
            handle.active = False
            handle._queue.clear()

        with self.store.lock:
            index = self._prefix if handle.children else self._exact
            handles = index.get(handle.path)
            if handles is not None:
                handles.discard(handle)
                if not handles:
                    del index[handle.path]
            self._handles.pop(handle.handle_id, None)

        logger.debug("Subscription removed", extra={"handle_id": handle.handle_id})

    def unsubscribe_all(self) -> None:
        for handle in list(self._handles.values()):
            self.unsubscribe(handle)

    @property
    def active_handles(self) -> list[SubscriptionHandle]:
        with self.store.lock:
            return list(self._handles.values())

    # Dispatch

    def _on_change(self, event: ChangeEvent) -> None:
        targets = list(self._exact.get(event.path, ()))
        parent_path = parent(event.path)
        if parent_path is not None:
            targets.extend(self._prefix.get(parent_path, ()))
        for handle in targets:
            self._enqueue(handle, event.node)

    def _enqueue(self, handle: SubscriptionHandle, node: Node) -> None:
        with handle._lock:
            if not handle.active:
                return
            handle._queue.append(node)
            if handle._scheduled or self._loop is None:
                return
            handle._scheduled = True
        self._loop.call_soon_threadsafe(self._start_dispatch, handle)

    def _start_dispatch(self, handle: SubscriptionHandle) -> None:
        handle._idle.clear()
        task = asyncio.ensure_future(self._dispatch(handle))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, handle: SubscriptionHandle) -> None:
        try:
            while True:
                with handle._lock:
                    if not handle.active or not handle._queue:
                        handle._scheduled = False
                        return
                    node = handle._queue.popleft()

                try:
                    result = handle.callback(node.path, node)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(
                        f"Subscription callback failed: {e}",
                        exc_info=True,
                        extra={"handle_id": handle.handle_id, "path": to_text(node.path)},
                    )
                handle.delivered += 1
                if node.updated_at > handle.watermark:
                    handle.watermark = node.updated_at
                if handle._snapshot_left:
                    handle._snapshot_left -= 1
                    if not handle._snapshot_left:
                        handle._snapshot_done.set()
        finally:
            handle._snapshot_done.set()
            handle._idle.set()

    async def drain(self) -> None:
        """Wait until every queued notification has been dispatched."""
        while True:
            pending = [h for h in self.active_handles if h._scheduled]
            if not pending:
                return
            for handle in pending:
                if handle._idle.is_set():
                    # Dispatcher start is still queued on the loop
                    await asyncio.sleep(0)
                else:
                    await handle._idle.wait()

    def close(self) -> None:
        """Unsubscribe everything and detach from the store."""
        self.unsubscribe_all()
        self.store.remove_listener(self._on_change)
        for task in list(self._tasks):
            task.cancel()

    @property
    def stats(self) -> dict[str, Any]:
        handles = self.active_handles
        return {
            "subscriptions": len(handles),
            "pending": sum(len(h._queue) for h in handles),
            "delivered": sum(h.delivered for h in handles),
        }
