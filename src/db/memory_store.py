"""
In-process implementation of the ReplicatedStore.

A StoreHub plays the role of the backend: it holds the documents, resolves server timestamps,
executes last-will writes and fans out change notifications. Each participant talks to it through
its own StoreConnection.

Notifications are queued and delivered in order. Writes made from inside a callback are appended
to the same queue instead of being delivered recursively. With auto_flush=False nothing is
delivered until flush() is called, which is how tests model slow or reordered networks.
"""

import itertools
import logging
import time
import uuid
from collections import deque
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from src.core.events import Subscription
from src.core.exceptions import NetworkUnavailableError, StoreError
from src.db.store import SERVER_TIMESTAMP, ChildCallback, ValueCallback

logger = logging.getLogger(__name__)

Path = tuple[str, ...]
Clock = Callable[[], int]

_UNSET = object()


def system_clock() -> int:
    """Milliseconds since the epoch."""
    return int(time.time() * 1000)


class DocumentBackend(Protocol):
    """Where the hub keeps its documents (collection/name -> JSON-like value)."""

    def get_document(self, collection: str, name: str) -> Any:
        ...

    def put_document(self, collection: str, name: str, value: Any) -> None:
        """Store the value. None removes the document."""
        ...

    def list_documents(self, collection: str) -> dict[str, Any]:
        ...


class MemoryDocuments:
    """Documents kept in a dictionary."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Any]] = {}

    def get_document(self, collection: str, name: str) -> Any:
        return deepcopy(self._collections.get(collection, {}).get(name))

    def put_document(self, collection: str, name: str, value: Any) -> None:
        documents = self._collections.setdefault(collection, {})
        if value is None:
            documents.pop(name, None)
        else:
            documents[name] = deepcopy(value)

    def list_documents(self, collection: str) -> dict[str, Any]:
        return deepcopy(self._collections.get(collection, {}))

    def clear(self) -> None:
        self._collections.clear()


@dataclass
class _ValueListener:
    client_id: str
    path: Path
    callback: ValueCallback
    last: Any = _UNSET


@dataclass
class _ChildListener:
    client_id: str
    path: Path
    callback: ChildCallback
    known: set[str] = field(default_factory=set)


def split_path(path: str) -> Path:
    parts = tuple(part for part in path.split("/") if part)
    if not parts:
        raise StoreError("Cannot address the root of the store.")
    return parts


def _overlaps(a: Path, b: Path) -> bool:
    """True if one path is a prefix of the other (a change at one can change the other)."""
    shortest = min(len(a), len(b))
    return a[:shortest] == b[:shortest]


def _resolve_timestamps(value: Any, now: int) -> Any:
    if value == SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {key: _resolve_timestamps(item, now) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_timestamps(item, now) for item in value]
    return value


def _get_in(value: Any, parts: Path) -> Any:
    for part in parts:
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _set_in(document: dict[str, Any], parts: Path, value: Any) -> None:
    node = document
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            if value is None:
                return
            child = node[part] = {}
        node = child
    if value is None:
        node.pop(parts[-1], None)
    else:
        node[parts[-1]] = value


class StoreHub:
    """The shared backend all connections write to."""

    def __init__(
        self,
        documents: Optional[DocumentBackend] = None,
        clock: Clock = system_clock,
        auto_flush: bool = True,
    ) -> None:
        self.documents = documents if documents is not None else MemoryDocuments()
        self.clock = clock
        self.auto_flush = auto_flush
        self.online = True
        self._ids = itertools.count(1)
        self._push_counter = itertools.count(1)
        self._value_listeners: dict[int, _ValueListener] = {}
        self._child_listeners: dict[int, _ChildListener] = {}
        self._wills: dict[str, dict[Path, Any]] = {}
        self._connections: dict[str, "StoreConnection"] = {}
        self._queue: deque[tuple[Callable[..., None], tuple[Any, ...]]] = deque()
        self._delivering = False

    # --- CONNECTIONS ---
    def connect(self, client_id: Optional[str] = None) -> "StoreConnection":
        self._assert_online()
        client_id = client_id or uuid.uuid4().hex[:9]
        connection = StoreConnection(self, client_id)
        self._connections[client_id] = connection
        logger.debug("Client %s connected", client_id)
        return connection

    def drop(self, client_id: str) -> None:
        """Abrupt disconnect: the backend runs the client's last-will writes on its behalf."""
        wills = self._wills.pop(client_id, {})
        self._remove_listeners(client_id)
        connection = self._connections.pop(client_id, None)
        if connection is not None:
            connection.closed = True
        logger.info("Client %s dropped, executing %d last-will write(s)", client_id, len(wills))
        for parts, value in wills.items():
            self._write_many([(parts, value)])

    def disconnect(self, client_id: str) -> None:
        """Graceful disconnect. Last-will writes are discarded."""
        self._wills.pop(client_id, None)
        self._remove_listeners(client_id)
        self._connections.pop(client_id, None)

    def set_online(self, online: bool) -> None:
        self.online = online

    # --- DELIVERY ---
    def flush(self) -> int:
        """Deliver queued notifications. Returns how many were delivered."""
        if self._delivering:
            return 0
        delivered = 0
        self._delivering = True
        try:
            while self._queue:
                callback, args = self._queue.popleft()
                callback(*args)
                delivered += 1
        finally:
            self._delivering = False
        return delivered

    @property
    def pending_notifications(self) -> int:
        return len(self._queue)

    # --- OPERATIONS (called by StoreConnection) ---
    def read(self, parts: Path) -> Any:
        self._assert_online()
        return self._read(parts)

    def write(self, parts: Path, value: Any) -> None:
        self._assert_online()
        self._write_many([(parts, value)])

    def merge(self, parts: Path, fields: dict[str, Any]) -> None:
        self._assert_online()
        writes = [(parts + tuple(key.split("/")), value) for key, value in fields.items()]
        self._write_many(writes)

    def push(self, parts: Path, value: Any) -> str:
        self._assert_online()
        key = f"-{next(self._push_counter):010d}"
        self._write_many([(parts + (key,), value)])
        return key

    def listen_value(self, client_id: str, parts: Path, callback: ValueCallback) -> Subscription:
        self._assert_online()
        listener_id = next(self._ids)
        listener = _ValueListener(client_id, parts, callback)
        self._value_listeners[listener_id] = listener
        self._enqueue_value(listener)
        self._deliver()
        return Subscription(lambda: self._value_listeners.pop(listener_id, None))

    def listen_child_added(self, client_id: str, parts: Path, callback: ChildCallback) -> Subscription:
        self._assert_online()
        listener_id = next(self._ids)
        listener = _ChildListener(client_id, parts, callback)
        self._child_listeners[listener_id] = listener
        self._enqueue_children(listener)
        self._deliver()
        return Subscription(lambda: self._child_listeners.pop(listener_id, None))

    def register_will(self, client_id: str, parts: Path, value: Any) -> None:
        self._assert_online()
        self._wills.setdefault(client_id, {})[parts] = value

    def cancel_will(self, client_id: str, parts: Path) -> None:
        self._wills.get(client_id, {}).pop(parts, None)

    # --- INTERNALS ---
    def _assert_online(self) -> None:
        if not self.online:
            raise NetworkUnavailableError("The replicated store is unreachable.")

    def _read(self, parts: Path) -> Any:
        collection = parts[0]
        if len(parts) == 1:
            return self.documents.list_documents(collection) or None
        document = self.documents.get_document(collection, parts[1])
        return _get_in(document, parts[2:])

    def _apply(self, parts: Path, value: Any) -> None:
        collection = parts[0]
        if len(parts) == 1:
            current = self.documents.list_documents(collection)
            replacement = value if isinstance(value, dict) else {}
            for name in current:
                if name not in replacement:
                    self.documents.put_document(collection, name, None)
            for name, document in replacement.items():
                self.documents.put_document(collection, name, document)
            return
        name = parts[1]
        if len(parts) == 2:
            self.documents.put_document(collection, name, value)
            return
        document = self.documents.get_document(collection, name)
        if not isinstance(document, dict):
            if value is None:
                return
            document = {}
        _set_in(document, parts[2:], value)
        self.documents.put_document(collection, name, document or None)

    def _write_many(self, writes: list[tuple[Path, Any]]) -> None:
        now = self.clock()
        for parts, value in writes:
            self._apply(parts, _resolve_timestamps(deepcopy(value), now))
        touched = [parts for parts, _ in writes]
        for listener in list(self._value_listeners.values()):
            if any(_overlaps(listener.path, parts) for parts in touched):
                self._enqueue_value(listener)
        for listener in list(self._child_listeners.values()):
            if any(_overlaps(listener.path, parts) for parts in touched):
                self._enqueue_children(listener)
        self._deliver()

    def _enqueue_value(self, listener: _ValueListener) -> None:
        value = self._read(listener.path)
        if value == listener.last:
            return
        listener.last = deepcopy(value)
        self._queue.append((listener.callback, (value,)))

    def _enqueue_children(self, listener: _ChildListener) -> None:
        children = self._read(listener.path)
        if not isinstance(children, dict):
            listener.known.clear()
            return
        for key in sorted(set(children) - listener.known):
            self._queue.append((listener.callback, (key, children[key])))
        listener.known = set(children)

    def _deliver(self) -> None:
        if self.auto_flush:
            self.flush()

    def _remove_listeners(self, client_id: str) -> None:
        for listeners in (self._value_listeners, self._child_listeners):
            for listener_id in [i for i, l in listeners.items() if l.client_id == client_id]:
                del listeners[listener_id]


class StoreConnection:
    """A participant's handle on the hub. Implements the ReplicatedStore protocol."""

    def __init__(self, hub: StoreHub, client_id: str) -> None:
        self.hub = hub
        self.client_id = client_id
        self.closed = False

    def get(self, path: str) -> Any:
        self._assert_open()
        return self.hub.read(split_path(path))

    def put(self, path: str, value: Any) -> None:
        self._assert_open()
        self.hub.write(split_path(path), value)

    def update(self, path: str, fields: dict[str, Any]) -> None:
        self._assert_open()
        self.hub.merge(split_path(path), fields)

    def push(self, path: str, value: Any) -> str:
        self._assert_open()
        return self.hub.push(split_path(path), value)

    def remove(self, path: str) -> None:
        self.put(path, None)

    def subscribe_value(self, path: str, callback: ValueCallback) -> Subscription:
        self._assert_open()
        return self.hub.listen_value(self.client_id, split_path(path), callback)

    def subscribe_child_added(self, path: str, callback: ChildCallback) -> Subscription:
        self._assert_open()
        return self.hub.listen_child_added(self.client_id, split_path(path), callback)

    def on_disconnect(self, path: str, value: Any) -> None:
        self._assert_open()
        self.hub.register_will(self.client_id, split_path(path), value)

    def cancel_on_disconnect(self, path: str) -> None:
        self.hub.cancel_will(self.client_id, split_path(path))

    def close(self) -> None:
        if not self.closed:
            self.hub.disconnect(self.client_id)
            self.closed = True

    def _assert_open(self) -> None:
        if self.closed:
            raise NetworkUnavailableError(f"Connection {self.client_id} is closed.")
