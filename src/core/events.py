"""
Typed events sent from the game/session core to the presentation layer.

Every event is a frozen dataclass; handlers subscribe per event type and get a Subscription back.
Cancelling the Subscription ends the handler's lifetime (the room service cancels everything it
registered when leaving a room).
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar


class Subscription:
    """Handle returned by every subscribe call. Cancelling twice is harmless."""

    def __init__(self, cancel: Callable[[], None]) -> None:
        self._cancel: Callable[[], None] | None = cancel

    @property
    def active(self) -> bool:
        return self._cancel is not None

    def cancel(self) -> None:
        if self._cancel is not None:
            cancel, self._cancel = self._cancel, None
            cancel()


# --- EVENTS ---
@dataclass(frozen=True)
class MoveApplied:
    line_key: str
    player_index: int
    completed_boxes: tuple[tuple[int, int], ...]
    turn_advanced: bool
    # False while the move only lives in a non-host mirror (optimistic)
    confirmed: bool = True


@dataclass(frozen=True)
class MoveRejected:
    line_key: str
    player_index: int
    reason: str


@dataclass(frozen=True)
class SnapshotApplied:
    game_id: str
    revision: int


@dataclass(frozen=True)
class StateDesync:
    """Optimistic moves that the authoritative snapshot did not contain. They have been discarded."""

    game_id: str
    revision: int
    discarded_lines: tuple[str, ...]


@dataclass(frozen=True)
class GameFinished:
    winner: int | None
    is_draw: bool
    final_scores: tuple[tuple[int, int], ...]


@dataclass(frozen=True)
class PlayersChanged:
    room_code: str
    players: tuple[str, ...]


@dataclass(frozen=True)
class PresenceChanged:
    room_code: str
    player_name: str
    connected: bool
    is_host: bool = False


@dataclass(frozen=True)
class RoomStatusChanged:
    room_code: str
    status: str


@dataclass(frozen=True)
class QuickMatchFound:
    room_code: str
    is_host: bool


@dataclass(frozen=True)
class ChatMessageReceived:
    player: str
    message: str
    timestamp: int
    is_system: bool = False
    type: str = "chat"
    is_own: bool = False


GameEvent = (
    MoveApplied
    | MoveRejected
    | SnapshotApplied
    | StateDesync
    | GameFinished
    | PlayersChanged
    | PresenceChanged
    | RoomStatusChanged
    | QuickMatchFound
    | ChatMessageReceived
)

E = TypeVar("E")


@dataclass
class EventBus:
    """Synchronous publish/subscribe by event type."""

    _handlers: dict[type, list[Callable[[Any], None]]] = field(
        default_factory=lambda: defaultdict(list)
    )

    def subscribe(
        self, event_type: type[E], handler: Callable[[E], None]
    ) -> Subscription:
        self._handlers[event_type].append(handler)
        return Subscription(lambda: self._remove(event_type, handler))

    def publish(self, event: GameEvent) -> None:
        # copy: handlers may unsubscribe while being called
        for handler in list(self._handlers.get(type(event), [])):
            handler(event)

    def _remove(self, event_type: type, handler: Callable[[Any], None]) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
