"""
Nalid24 - Shared realtime store.

The messenger has no application server. All coordination happens through a
shared, multi-writer, tree-structured key-value store with live
subscriptions (the "realtime database"). This module defines the interface
the core relies on and an in-process implementation of it.

Store semantics relied upon by the rest of the package:
- set (full overwrite), update (multi-path partial merge), remove
- read-once, child-added and value subscriptions
- field-scoped compare-and-set transactions
- server-side "on disconnect" writes that fire when a client's connection
  drops, even if the client never gets to run any code
- SERVER_TIMESTAMP placeholders resolved by the store's clock
- nodes without children do not exist (writing None or {} deletes)

Namespaces: chats/{chatId}/messages/{messageId}, presence/{userId},
contactRequests/{targetId}/{requesterId}, users/{userId}.
"""

import abc
import asyncio
import copy
import inspect
import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from .errors import ErrorCode, RemoteReadError, RemoteWriteError
from .utils import now_ms

logger = logging.getLogger(__name__)

# Placeholder resolved to the store's clock (milliseconds) at write time
SERVER_TIMESTAMP: Dict[str, str] = {".sv": "timestamp"}

# Returned from a transaction update function to leave the value untouched
ABORT = object()


def split_path(path: str) -> List[str]:
    """Split a slash separated path into its segments."""
    return [segment for segment in str(path).split("/") if segment]


def join_path(*parts: str) -> str:
    """Join path fragments, normalizing slashes."""
    segments: List[str] = []
    for part in parts:
        segments.extend(split_path(part))
    return "/".join(segments)


class DataSnapshot:
    """Immutable view of the data at a location, as returned by reads and events."""

    def __init__(self, path: str, value: Any):
        self.path = join_path(path)
        self._value = value

    @property
    def key(self) -> Optional[str]:
        segments = split_path(self.path)
        return segments[-1] if segments else None

    def exists(self) -> bool:
        return self._value is not None

    def val(self) -> Any:
        """Return a deep copy of the value (None if the location is empty)."""
        return copy.deepcopy(self._value)

    def child(self, relative_path: str) -> "DataSnapshot":
        value = self._value
        for segment in split_path(relative_path):
            value = value.get(segment) if isinstance(value, dict) else None
        return DataSnapshot(join_path(self.path, relative_path), value)

    def children(self) -> Iterator["DataSnapshot"]:
        """Iterate child snapshots in key order."""
        if not isinstance(self._value, dict):
            return
        for key in sorted(self._value):
            yield DataSnapshot(join_path(self.path, key), self._value[key])

    def __repr__(self) -> str:
        return f"DataSnapshot(path={self.path!r}, exists={self.exists()})"


class Subscription:
    """Handle for a live listener. ``cancel()`` is idempotent."""

    def __init__(self, on_cancel: Callable[[], None]):
        self._on_cancel = on_cancel
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._on_cancel()

    __call__ = cancel


class OnDisconnect(abc.ABC):
    """Writes the store applies on its own side when this client disconnects."""

    @abc.abstractmethod
    async def set(self, value: Any) -> None: ...

    @abc.abstractmethod
    async def update(self, values: Dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def remove(self) -> None: ...

    @abc.abstractmethod
    async def cancel(self) -> None: ...


class RealtimeStore(abc.ABC):
    """Client-side interface to the shared realtime store.

    Every read and write is a suspension point. Failures surface as
    RemoteWriteError / RemoteReadError.
    """

    @property
    @abc.abstractmethod
    def connected(self) -> bool: ...

    @abc.abstractmethod
    async def set(self, path: str, value: Any) -> None: ...

    @abc.abstractmethod
    async def update(self, path: str, values: Dict[str, Any]) -> None:
        """Merge ``values`` (keys are paths relative to ``path``; None deletes)."""

    @abc.abstractmethod
    async def remove(self, path: str) -> None:
        """Delete a location. Removing a missing location succeeds."""

    @abc.abstractmethod
    async def get(self, path: str) -> DataSnapshot: ...

    @abc.abstractmethod
    async def transaction(self, path: str, update_fn: Callable[[Any], Any]) -> bool:
        """Atomically replace the value at ``path`` with ``update_fn(current)``.

        Returns False without writing when ``update_fn`` returns ABORT.
        """

    @abc.abstractmethod
    def on_child_added(self, path: str, callback: Callable[[DataSnapshot], Any]) -> Subscription:
        """Fire for every existing child, then for each child added later."""

    @abc.abstractmethod
    def on_value(self, path: str, callback: Callable[[DataSnapshot], Any]) -> Subscription:
        """Fire with the current value, then on every change."""

    @abc.abstractmethod
    def on_connection_change(self, callback: Callable[[bool], Any]) -> Subscription:
        """Fire with the current connection state, then on every transition."""

    @abc.abstractmethod
    def on_disconnect(self, path: str) -> OnDisconnect: ...


# In-process implementation


def _resolve(value: Any, timestamp: int) -> Any:
    """Resolve SERVER_TIMESTAMP placeholders and prune empty nodes."""
    if isinstance(value, dict):
        if value == SERVER_TIMESTAMP:
            return timestamp
        resolved = {}
        for key, child in value.items():
            child_value = _resolve(child, timestamp)
            if child_value is not None:
                resolved[str(key)] = child_value
        return resolved or None
    if isinstance(value, (list, tuple)):
        return [_resolve(item, timestamp) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise RemoteWriteError(f"Unsupported value type: {type(value).__name__}")


def _paths_overlap(first: str, second: str) -> bool:
    if not first or not second or first == second:
        return True
    return first.startswith(second + "/") or second.startswith(first + "/")


class _Listener:
    def __init__(self, client: "MemoryRealtimeClient", segments: List[str], callback: Callable):
        self.client = client
        self.segments = segments
        self.callback = callback
        self.subscription = Subscription(lambda: client._remove_listener(self))

    @property
    def active(self) -> bool:
        return self.subscription.active

    def refresh(self) -> None:
        raise NotImplementedError


class _ChildAddedListener(_Listener):
    def __init__(self, client, segments, callback):
        super().__init__(client, segments, callback)
        self.seen: Set[str] = set()

    def refresh(self) -> None:
        node = self.client.server._read(self.segments)
        keys = sorted(node) if isinstance(node, dict) else []
        new_keys = [key for key in keys if key not in self.seen]
        # Removed children are forgotten so a re-added child fires again
        self.seen = set(keys)
        for key in new_keys:
            snapshot = DataSnapshot("/".join(self.segments + [key]), copy.deepcopy(node[key]))
            self.client._dispatch(self, snapshot)


class _ValueListener(_Listener):
    _UNSET = object()

    def __init__(self, client, segments, callback):
        super().__init__(client, segments, callback)
        self.last: Any = self._UNSET

    def refresh(self) -> None:
        value = copy.deepcopy(self.client.server._read(self.segments))
        if self.last is not self._UNSET and value == self.last:
            return
        self.last = value
        self.client._dispatch(self, DataSnapshot("/".join(self.segments), copy.deepcopy(value)))


class _MemoryOnDisconnect(OnDisconnect):
    def __init__(self, client: "MemoryRealtimeClient", path: str):
        self.client = client
        self.path = join_path(path)

    async def set(self, value: Any) -> None:
        self.client._register_disconnect_op(self.path, [(self.path, value)])

    async def update(self, values: Dict[str, Any]) -> None:
        ops = [(join_path(self.path, key), value) for key, value in values.items()]
        self.client._register_disconnect_op(self.path, ops)

    async def remove(self) -> None:
        self.client._register_disconnect_op(self.path, [(self.path, None)])

    async def cancel(self) -> None:
        self.client._cancel_disconnect_ops(self.path)


class MemoryRealtimeServer:
    """
    Authoritative in-process tree shared by any number of clients.

    Used for tests and local single-process runs. Each device gets its own
    client via ``connect_client()``; clients see each other's writes through
    their subscriptions and own their own disconnect hooks.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self.clock = clock or now_ms
        self._tree: Dict[str, Any] = {}
        self._clients: List["MemoryRealtimeClient"] = []
        self._write_failures: List[List[Any]] = []
        self._read_failures: List[List[Any]] = []

    def connect_client(self, name: str = "client") -> "MemoryRealtimeClient":
        client = MemoryRealtimeClient(self, name)
        self._clients.append(client)
        return client

    def snapshot(self, path: str = "") -> DataSnapshot:
        """Server-side inspection, bypassing connection state and failure injection."""
        return DataSnapshot(path, copy.deepcopy(self._read(split_path(path))))

    def fail_writes(self, path_prefix: str, times: int = 1) -> None:
        """Make the next ``times`` writes touching ``path_prefix`` fail."""
        self._write_failures.append([join_path(path_prefix), times])

    def fail_reads(self, path_prefix: str, times: int = 1) -> None:
        """Make the next ``times`` reads touching ``path_prefix`` fail."""
        self._read_failures.append([join_path(path_prefix), times])

    def _consume_failure(self, failures: List[List[Any]], paths: List[str]) -> bool:
        for entry in failures:
            prefix, remaining = entry
            if remaining > 0 and any(_paths_overlap(path, prefix) for path in paths):
                entry[1] = remaining - 1
                return True
        return False

    def _check_write(self, paths: List[str]) -> None:
        if self._consume_failure(self._write_failures, paths):
            raise RemoteWriteError("Injected write failure", {"paths": paths})

    def _check_read(self, path: str) -> None:
        if self._consume_failure(self._read_failures, [path]):
            raise RemoteReadError("Injected read failure", {"path": path})

    def _read(self, segments: List[str]) -> Any:
        node: Any = self._tree
        for segment in segments:
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return node

    def _write_one(self, segments: List[str], value: Any) -> None:
        if not segments:
            self._tree = value if isinstance(value, dict) else {}
            return

        if value is None:
            self._delete(segments)
            return

        node = self._tree
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                child = {}
                node[segment] = child
            node = child
        node[segments[-1]] = value

    def _delete(self, segments: List[str]) -> None:
        trail: List[Tuple[Dict[str, Any], str]] = []
        node: Any = self._tree
        for segment in segments:
            if not isinstance(node, dict) or segment not in node:
                return
            trail.append((node, segment))
            node = node[segment]

        parent, key = trail.pop()
        del parent[key]
        # Prune parents left without children
        while trail and not parent:
            parent, key = trail.pop()
            del parent[key]

    def _apply(self, ops: List[Tuple[str, Any]]) -> None:
        timestamp = self.clock()
        resolved = [(split_path(path), _resolve(copy.deepcopy(value), timestamp)) for path, value in ops]
        for segments, value in resolved:
            self._write_one(segments, value)
        self._notify()

    def _notify(self) -> None:
        for client in list(self._clients):
            if client.connected:
                client._refresh_listeners()

    async def drain(self) -> None:
        """Wait until every dispatched listener callback (and the ones they trigger) finished."""
        while True:
            pending = [task for client in self._clients for task in client._pending]
            if not pending:
                await asyncio.sleep(0)
                if not any(client._pending for client in self._clients):
                    return
                continue
            await asyncio.gather(*pending, return_exceptions=True)


class MemoryRealtimeClient(RealtimeStore):
    """One device's connection to a MemoryRealtimeServer."""

    def __init__(self, server: MemoryRealtimeServer, name: str = "client"):
        self.server = server
        self.name = name
        self._connected = True
        self._listeners: List[_Listener] = []
        self._connection_listeners: List[Tuple[Subscription, Callable[[bool], Any]]] = []
        self._disconnect_ops: Dict[str, List[Tuple[str, Any]]] = {}
        self._pending: Set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._connected

    def _require_connection(self, error_cls) -> None:
        if not self._connected:
            raise error_cls(f"Client '{self.name}' is offline", code=ErrorCode.E203_REMOTE_OFFLINE)

    async def set(self, path: str, value: Any) -> None:
        self._require_connection(RemoteWriteError)
        path = join_path(path)
        self.server._check_write([path])
        self.server._apply([(path, value)])

    async def update(self, path: str, values: Dict[str, Any]) -> None:
        self._require_connection(RemoteWriteError)
        if not values:
            return
        ops = [(join_path(path, key), value) for key, value in values.items()]
        self.server._check_write([op_path for op_path, _ in ops])
        self.server._apply(ops)

    async def remove(self, path: str) -> None:
        await self.set(path, None)

    async def get(self, path: str) -> DataSnapshot:
        self._require_connection(RemoteReadError)
        path = join_path(path)
        self.server._check_read(path)
        return DataSnapshot(path, copy.deepcopy(self.server._read(split_path(path))))

    async def transaction(self, path: str, update_fn: Callable[[Any], Any]) -> bool:
        self._require_connection(RemoteWriteError)
        path = join_path(path)
        self.server._check_write([path])
        current = copy.deepcopy(self.server._read(split_path(path)))
        new_value = update_fn(current)
        if new_value is ABORT:
            return False
        self.server._apply([(path, new_value)])
        return True

    def on_child_added(self, path: str, callback: Callable[[DataSnapshot], Any]) -> Subscription:
        return self._add_listener(_ChildAddedListener(self, split_path(path), callback))

    def on_value(self, path: str, callback: Callable[[DataSnapshot], Any]) -> Subscription:
        return self._add_listener(_ValueListener(self, split_path(path), callback))

    def on_connection_change(self, callback: Callable[[bool], Any]) -> Subscription:
        subscription = Subscription(lambda: self._remove_connection_listener(subscription))
        self._connection_listeners.append((subscription, callback))
        self._spawn(self._invoke(subscription, callback, self._connected))
        return subscription

    def on_disconnect(self, path: str) -> OnDisconnect:
        return _MemoryOnDisconnect(self, path)

    def _add_listener(self, listener: _Listener) -> Subscription:
        self._listeners.append(listener)
        if self._connected:
            listener.refresh()
        return listener.subscription

    def _remove_listener(self, listener: _Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _refresh_listeners(self) -> None:
        for listener in list(self._listeners):
            if listener.active:
                listener.refresh()

    def _dispatch(self, listener: _Listener, snapshot: DataSnapshot) -> None:
        self._spawn(self._invoke(listener.subscription, listener.callback, snapshot))

    def _remove_connection_listener(self, subscription: Subscription) -> None:
        self._connection_listeners = [
            (registered, callback)
            for registered, callback in self._connection_listeners
            if registered is not subscription
        ]

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _invoke(self, subscription: Subscription, callback: Callable, argument: Any) -> None:
        if not subscription.active:
            return
        try:
            result = callback(argument)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"[{self.name}] listener callback failed: {e}", exc_info=True)

    def _register_disconnect_op(self, path: str, ops: List[Tuple[str, Any]]) -> None:
        self._require_connection(RemoteWriteError)
        self._disconnect_ops[path] = ops
        logger.debug(f"[{self.name}] on-disconnect write armed at {path}")

    def _cancel_disconnect_ops(self, path: str) -> None:
        self._require_connection(RemoteWriteError)
        for armed_path in list(self._disconnect_ops):
            if armed_path == path or armed_path.startswith(path + "/"):
                del self._disconnect_ops[armed_path]

    def _notify_connection(self) -> None:
        for subscription, callback in list(self._connection_listeners):
            self._spawn(self._invoke(subscription, callback, self._connected))

    def drop_connection(self) -> None:
        """
        Simulate an abrupt connection loss.

        The server applies this client's armed on-disconnect writes on its
        own; the client gets no chance to run code first.
        """
        if not self._connected:
            return
        self._connected = False
        ops = [op for armed in self._disconnect_ops.values() for op in armed]
        self._disconnect_ops.clear()
        logger.info(f"[{self.name}] connection dropped ({len(ops)} on-disconnect writes)")
        if ops:
            self.server._apply(ops)
        self._notify_connection()

    def reconnect(self) -> None:
        """Restore the connection and catch listeners up with missed changes."""
        if self._connected:
            return
        self._connected = True
        logger.info(f"[{self.name}] reconnected")
        self._notify_connection()
        self._refresh_listeners()

    async def drain(self) -> None:
        await self.server.drain()
