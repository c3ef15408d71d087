"""
Protocol for the replicated key-value store (any real-time database with subscribe/push semantics fits).

Paths are '/'-separated, e.g. 'rooms/ABCD/gameState'. The first two segments (collection/name)
address a document; deeper segments address fields inside that document.
"""

import re
from typing import Any, Callable, Protocol

from src.core.events import Subscription

# Write-once token: the store replaces it with its own clock (milliseconds) when the value is written.
SERVER_TIMESTAMP: dict[str, str] = {".sv": "timestamp"}

ValueCallback = Callable[[Any], None]
ChildCallback = Callable[[str, Any], None]

FORBIDDEN_KEY_CHARACTERS = re.compile(r"[.#$/\[\]]")


def sanitize_key(name: str) -> str:
    """Make a display name usable as a path segment."""
    return FORBIDDEN_KEY_CHARACTERS.sub("_", name)


def join_path(*parts: str) -> str:
    return "/".join(part.strip("/") for part in parts if part)


class ReplicatedStore(Protocol):
    """One participant's connection to the replicated store."""

    client_id: str

    def get(self, path: str) -> Any:
        """Current value at path (None if absent)."""
        ...

    def put(self, path: str, value: Any) -> None:
        """Overwrite the value at path. None deletes it."""
        ...

    def update(self, path: str, fields: dict[str, Any]) -> None:
        """Merge-assign the given (relative) fields at path, in one write."""
        ...

    def push(self, path: str, value: Any) -> str:
        """Append a child with a new, ordered, unique key and return that key."""
        ...

    def remove(self, path: str) -> None:
        ...

    def subscribe_value(self, path: str, callback: ValueCallback) -> Subscription:
        """Called with the current value right away and on every change after that."""
        ...

    def subscribe_child_added(self, path: str, callback: ChildCallback) -> Subscription:
        """Called with (key, value) for every existing child and then for each new child."""
        ...

    def on_disconnect(self, path: str, value: Any) -> None:
        """Register a 'last will' write the backend performs itself when this client drops."""
        ...

    def cancel_on_disconnect(self, path: str) -> None:
        ...

    def close(self) -> None:
        """Graceful disconnect: subscriptions end, registered last-will writes are discarded."""
        ...
