"""Unit tests for src/db/memory_store.py"""

from typing import Any, Callable
from unittest.mock import Mock

import pytest

from src.core.exceptions import NetworkUnavailableError, StoreError
from src.db.memory_store import StoreConnection, StoreHub, split_path
from src.db.store import SERVER_TIMESTAMP, join_path, sanitize_key


# --- PATHS ---
def test_sanitize_key() -> None:
    assert sanitize_key("a.b#c$d/e[f]g") == "a_b_c_d_e_f_g"
    assert sanitize_key("Alice") == "Alice"


def test_join_and_split_path() -> None:
    assert join_path("rooms", "ABCD", "players") == "rooms/ABCD/players"
    assert split_path("/rooms//ABCD/") == ("rooms", "ABCD")
    with pytest.raises(StoreError):
        split_path("/")


# --- READ / WRITE ---
def test_put_and_get_nested(connect: Callable[[str], StoreConnection]) -> None:
    store = connect("a")
    store.put("rooms/ABCD", {"code": "ABCD", "players": {"Alice": {"connected": True}}})
    store.put("rooms/ABCD/players/Bob", {"connected": True})

    assert store.get("rooms/ABCD/code") == "ABCD"
    assert store.get("rooms/ABCD/players") == {
        "Alice": {"connected": True},
        "Bob": {"connected": True},
    }
    assert store.get("rooms/WXYZ") is None
    assert store.get("rooms/ABCD/missing/deeper") is None


def test_put_none_deletes(connect: Callable[[str], StoreConnection]) -> None:
    store = connect("a")
    store.put("rooms/ABCD", {"code": "ABCD", "status": "waiting"})
    store.remove("rooms/ABCD/status")
    assert store.get("rooms/ABCD") == {"code": "ABCD"}
    store.remove("rooms/ABCD")
    assert store.get("rooms/ABCD") is None


def test_update_merges_fields(connect: Callable[[str], StoreConnection]) -> None:
    store = connect("a")
    store.put("rooms/ABCD", {"code": "ABCD", "status": "waiting", "moves": {"-1": {}}})
    store.update("rooms/ABCD", {"status": "playing", "moves": None, "gameState/revision": 1})
    assert store.get("rooms/ABCD") == {
        "code": "ABCD",
        "status": "playing",
        "gameState": {"revision": 1},
    }


def test_server_timestamp_is_resolved(hub: StoreHub, connect: Callable[[str], StoreConnection]) -> None:
    store = connect("a")
    store.put("rooms/ABCD", {"createdAt": SERVER_TIMESTAMP, "players": {"x": {"joinedAt": SERVER_TIMESTAMP}}})
    created_at = store.get("rooms/ABCD/createdAt")
    assert isinstance(created_at, int)
    assert store.get("rooms/ABCD/players/x/joinedAt") == created_at


def test_push_keys_are_ordered(connect: Callable[[str], StoreConnection]) -> None:
    store = connect("a")
    keys = [store.push("rooms/ABCD/chat", {"n": n}) for n in range(12)]
    assert keys == sorted(keys)
    assert len(set(keys)) == 12
    assert list(store.get("rooms/ABCD/chat")) == keys


# --- SUBSCRIPTIONS ---
def test_value_subscription_fires_immediately_and_on_change(
    connect: Callable[[str], StoreConnection],
) -> None:
    a, b = connect("a"), connect("b")
    a.put("rooms/ABCD/status", "waiting")
    callback = Mock()
    b.subscribe_value("rooms/ABCD/status", callback)

    a.put("rooms/ABCD/status", "playing")
    a.put("rooms/ABCD/status", "playing")  # unchanged value: no notification
    a.put("rooms/ABCD/host", "Alice")  # sibling: no notification

    assert [c.args[0] for c in callback.call_args_list] == ["waiting", "playing"]


def test_value_subscription_sees_parent_writes(connect: Callable[[str], StoreConnection]) -> None:
    store = connect("a")
    callback = Mock()
    store.subscribe_value("rooms/ABCD/status", callback)
    store.put("rooms/ABCD", {"status": "waiting"})
    assert [c.args[0] for c in callback.call_args_list] == [None, "waiting"]


def test_child_added_gets_existing_children_first(connect: Callable[[str], StoreConnection]) -> None:
    store = connect("a")
    first = store.push("rooms/ABCD/moves", {"n": 1})
    received: list[tuple[str, Any]] = []
    store.subscribe_child_added("rooms/ABCD/moves", lambda key, value: received.append((key, value)))
    second = store.push("rooms/ABCD/moves", {"n": 2})

    assert received == [(first, {"n": 1}), (second, {"n": 2})]


def test_cancelled_subscription(connect: Callable[[str], StoreConnection]) -> None:
    store = connect("a")
    callback = Mock()
    subscription = store.subscribe_value("rooms/ABCD/status", callback)
    subscription.cancel()
    store.put("rooms/ABCD/status", "playing")
    callback.assert_called_once_with(None)


def test_writes_from_callbacks_are_queued(connect: Callable[[str], StoreConnection]) -> None:
    """A write made inside a callback is delivered after the current notification, never recursively."""
    store = connect("a")
    order: list[str] = []

    def on_ping(value: Any) -> None:
        if value is None:
            return
        order.append(f"ping {value}")
        store.put("pong/x", value)
        order.append(f"ping {value} done")

    store.subscribe_value("ping/x", on_ping)
    store.subscribe_value("pong/x", lambda value: value and order.append(f"pong {value}"))
    store.put("ping/x", 1)

    assert order == ["ping 1", "ping 1 done", "pong 1"]


def test_delayed_delivery(delayed_hub: StoreHub) -> None:
    store = delayed_hub.connect("a")
    callback = Mock()
    store.subscribe_value("rooms/ABCD/status", callback)
    store.put("rooms/ABCD/status", "waiting")
    store.put("rooms/ABCD/status", "playing")
    callback.assert_not_called()
    assert delayed_hub.pending_notifications == 3

    assert delayed_hub.flush() == 3
    assert [c.args[0] for c in callback.call_args_list] == [None, "waiting", "playing"]


# --- CONNECTIONS ---
def test_offline_hub_raises(hub: StoreHub, connect: Callable[[str], StoreConnection]) -> None:
    store = connect("a")
    hub.set_online(False)
    with pytest.raises(NetworkUnavailableError):
        store.put("rooms/ABCD/status", "waiting")
    with pytest.raises(NetworkUnavailableError):
        hub.connect("b")
    hub.set_online(True)
    store.put("rooms/ABCD/status", "waiting")


def test_closed_connection_raises(connect: Callable[[str], StoreConnection]) -> None:
    store = connect("a")
    store.close()
    with pytest.raises(NetworkUnavailableError):
        store.get("rooms/ABCD")


def test_drop_runs_last_will(hub: StoreHub, connect: Callable[[str], StoreConnection]) -> None:
    a, b = connect("a"), connect("b")
    a.put("rooms/ABCD/players/Alice/connected", True)
    a.on_disconnect("rooms/ABCD/players/Alice/connected", False)
    callback = Mock()
    b.subscribe_value("rooms/ABCD/players/Alice/connected", callback)

    hub.drop("a")

    assert b.get("rooms/ABCD/players/Alice/connected") is False
    assert [c.args[0] for c in callback.call_args_list] == [True, False]
    assert a.closed


def test_graceful_close_discards_last_will(hub: StoreHub, connect: Callable[[str], StoreConnection]) -> None:
    a, b = connect("a"), connect("b")
    a.put("rooms/ABCD/players/Alice/connected", True)
    a.on_disconnect("rooms/ABCD/players/Alice/connected", False)
    a.close()
    hub.drop("a")
    assert b.get("rooms/ABCD/players/Alice/connected") is True


def test_cancelled_last_will(hub: StoreHub, connect: Callable[[str], StoreConnection]) -> None:
    a, b = connect("a"), connect("b")
    a.put("rooms/ABCD/players/Alice/connected", True)
    a.on_disconnect("rooms/ABCD/players/Alice/connected", False)
    a.cancel_on_disconnect("rooms/ABCD/players/Alice/connected")
    hub.drop("a")
    assert b.get("rooms/ABCD/players/Alice/connected") is True
