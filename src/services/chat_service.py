"""Room chat: an append-only log under rooms/<CODE>/chat, plus the system notices the core posts to it."""

import logging
from typing import Any, Optional

from pydantic import ValidationError

from src.api.models import ChatMessageRecord
from src.core.events import ChatMessageReceived, EventBus, Subscription
from src.core.exceptions import GameError
from src.core.shared_types import MessageType
from src.db.store import SERVER_TIMESTAMP, ReplicatedStore, join_path

logger = logging.getLogger(__name__)

SYSTEM_PLAYER = "System"
DEFAULT_HISTORY_LIMIT = 100

# (timestamp, client id, text)
MessageIdentity = tuple[int, str, str]


def game_over_message(winner: Optional[str]) -> str:
    if winner:
        return f"Game over! {winner} wins!"
    return "Game ended in a tie!"


class ChatService:
    def __init__(
        self,
        store: ReplicatedStore,
        events: EventBus,
        room_code: str,
        player_name: str,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self.store = store
        self.events = events
        self.room_code = room_code
        self.player_name = player_name
        self.history_limit = history_limit
        self.messages: list[ChatMessageRecord] = []
        self._seen: set[MessageIdentity] = set()
        self._subscription: Optional[Subscription] = None

    @property
    def path(self) -> str:
        return join_path("rooms", self.room_code, "chat")

    def start(self) -> None:
        self._subscription = self.store.subscribe_child_added(self.path, self._on_message)

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def send(self, text: str) -> Optional[str]:
        """Post a message from the local player. Blank messages are dropped."""
        text = text.strip()
        if not text:
            return None
        return self._push(self.player_name, text, MessageType.CHAT, is_system=False)

    def system(self, text: str, message_type: MessageType = MessageType.GAME) -> str:
        return self._push(SYSTEM_PLAYER, text, message_type, is_system=True)

    def clear(self) -> None:
        self.messages = []

    def _push(self, player: str, text: str, message_type: MessageType, is_system: bool) -> str:
        record = ChatMessageRecord(
            player=player,
            message=text,
            client_id=self.store.client_id,
            is_system=is_system,
            type=message_type,
        ).to_wire()
        record["timestamp"] = SERVER_TIMESTAMP
        return self.store.push(self.path, record)

    def _on_message(self, key: str, value: Any) -> None:
        try:
            message = ChatMessageRecord.model_validate(value)
        except (ValidationError, GameError) as e:
            logger.warning("Room %s: ignoring malformed chat message %s: %s", self.room_code, key, e)
            return

        # server timestamps only have millisecond resolution, so the text is part of the identity
        identity = (message.timestamp, message.client_id, message.message)
        if identity in self._seen:
            logger.debug("Room %s: duplicate chat message %s", self.room_code, key)
            return
        self._seen.add(identity)

        self.messages.append(message)
        if len(self.messages) > self.history_limit:
            self.messages = self.messages[-self.history_limit :]

        self.events.publish(
            ChatMessageReceived(
                player=message.player,
                message=message.message,
                timestamp=message.timestamp,
                is_system=message.is_system,
                type=message.type.value,
                is_own=(not message.is_system and message.player == self.player_name),
            )
        )
