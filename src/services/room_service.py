"""Orchestration of a participant's room membership: create/join, quick match, presence, start/rematch, leave."""

import logging
import random
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from src.api.models import (
    CreateRoomRequest,
    GameResultRecord,
    JoinRoomRequest,
    PlayerRecord,
    QuickMatchEntry,
    RoomPlayerRecord,
    RoomRecord,
)
from src.core.config import Settings
from src.core.events import (
    EventBus,
    GameFinished,
    PlayersChanged,
    PresenceChanged,
    QuickMatchFound,
    RoomStatusChanged,
    Subscription,
)
from src.core.exceptions import (
    DuplicateNameError,
    GameError,
    InvalidRequestError,
    NotHostError,
    QuickMatchCommittedError,
    RoomCodeUnavailableError,
    RoomError,
    RoomFullError,
    RoomNotAcceptingPlayersError,
    RoomNotFoundError,
    StoreError,
)
from src.core.shared_types import MessageType, Status
from src.db.memory_store import Clock, system_clock
from src.db.store import SERVER_TIMESTAMP, ReplicatedStore, join_path, sanitize_key
from src.dots.game import Game
from src.services.chat_service import ChatService, game_over_message
from src.services.sync_service import GameSynchronizer, room_path

logger = logging.getLogger(__name__)

QUEUE_PATH = "quickMatchQueue"
QUEUE_WAITING = "waiting"
QUEUE_MATCHED = "matched"


@dataclass(frozen=True)
class RoomHandle:
    code: str
    is_host: bool
    invite_link: str


@dataclass(frozen=True)
class Matched:
    room: RoomHandle


@dataclass(frozen=True)
class Queued:
    entry_key: str


QuickMatchResult = Matched | Queued


class RoomService:
    """One per participant. Holds the participant's current room (if any) and everything tied to it."""

    def __init__(
        self,
        store: ReplicatedStore,
        events: EventBus,
        player_name: str,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
        clock: Clock = system_clock,
    ) -> None:
        self.store = store
        self.events = events
        self.player_name = player_name
        self.settings = settings or Settings()
        self.rng = rng or random.Random()
        self.clock = clock

        self.room_code: Optional[str] = None
        self.is_host = False
        self.synchronizer: Optional[GameSynchronizer] = None
        self.chat: Optional[ChatService] = None
        self._subscriptions: list[Subscription] = []
        self._presence: dict[str, bool] = {}
        self._queue_key: Optional[str] = None
        self._queue_subscription: Optional[Subscription] = None
        self._quick_match_room: Optional[str] = None

    @property
    def player_key(self) -> str:
        return sanitize_key(self.player_name)

    # --- ROOMS ---
    def create_room(self, max_players: int = 2, grid_size: Optional[int] = None) -> RoomHandle:
        """Create a room with the local player as host."""
        request = CreateRoomRequest(
            player_name=self.player_name,
            max_players=max_players,
            grid_size=self.settings.default_grid_size if grid_size is None else grid_size,
        )
        self._validate_room_settings(request.max_players, request.grid_size)
        self._assert_not_in_room()

        code = self._unused_room_code()
        room = RoomRecord(
            code=code,
            host=request.player_name,
            max_players=request.max_players,
            grid_size=request.grid_size,
            status=Status.WAITING,
            players={self.player_key: RoomPlayerRecord(name=request.player_name, is_host=True)},
        )
        self.store.put(room_path(code), self._room_to_wire(room))

        try:
            self._enter_room(code, is_host=True)
        except StoreError:
            self._discard(room_path(code))
            raise
        logger.info("Room %s created by %s", code, self.player_name)
        return self._handle()

    def join_room(self, code: str) -> RoomHandle:
        """
        Join a waiting room as a regular player.
        ----
        Raises RoomNotFoundError, RoomNotAcceptingPlayersError, RoomFullError or DuplicateNameError.
        """
        request = JoinRoomRequest(player_name=self.player_name, code=code)
        self._assert_not_in_room()

        room = self._fetch_room(request.code)
        if room.status != Status.WAITING:
            raise RoomNotAcceptingPlayersError("This room is not accepting new players.")
        if len(room.players) >= room.max_players:
            raise RoomFullError("Room is full.")
        if self.player_key in room.players:
            raise DuplicateNameError("A player with this name is already in the room.")

        player = RoomPlayerRecord(name=request.player_name).to_wire()
        player["joinedAt"] = SERVER_TIMESTAMP
        player_path = room_path(request.code, "players", self.player_key)
        self.store.put(player_path, player)

        try:
            self._enter_room(request.code, is_host=False)
        except StoreError:
            self._discard(player_path)
            raise
        self._post_system(f"{self.player_name} joined the room", MessageType.JOIN)
        logger.info("%s joined room %s", self.player_name, request.code)
        return self._handle()

    def start_game(self) -> Game:
        """Host only: waiting -> playing, with a fresh game for everybody in the room."""
        self._assert_host()
        assert self.room_code is not None
        room = self._fetch_room(self.room_code)
        if room.status != Status.WAITING:
            raise RoomError(f"Game already started. status: {room.status}")
        players = room.ordered_players()
        if len(players) < self.settings.min_players:
            raise RoomError(f"At least {self.settings.min_players} players are needed to start.")

        game = Game.new_game([p.name for p in players], room.grid_size, host=room.host)
        synchronizer = self._attach_synchronizer()
        synchronizer.publish_new_game(
            game, {"status": Status.PLAYING.value, "gameStartedAt": SERVER_TIMESTAMP}
        )
        self._post_system("Game started! Good luck!", MessageType.GAME)
        logger.info("Room %s: game started with %s", self.room_code, [p.name for p in players])
        return game

    def request_rematch(self) -> Game:
        """Host only: same players, fresh board."""
        self._assert_host()
        if self.synchronizer is None or self.synchronizer.game is None:
            raise RoomError("No game has been played in this room yet.")
        previous = self.synchronizer.game
        host = next((p.name for p in previous.players if p.is_host), None)
        game = Game.new_game([p.name for p in previous.players], previous.grid_size, host=host)
        self.synchronizer.publish_new_game(
            game,
            {
                "status": Status.PLAYING.value,
                "gameResult": None,
                "gameStartedAt": SERVER_TIMESTAMP,
            },
        )
        self._post_system("Rematch started!", MessageType.GAME)
        return game

    def leave_room(self) -> None:
        """Release every subscription and mark the local player as disconnected."""
        if self.room_code is None:
            return
        code = self.room_code
        self._post_system(f"{self.player_name} left the room", MessageType.LEAVE)

        self._release_room()

        presence_path = room_path(code, "players", self.player_key, "connected")
        try:
            self.store.put(presence_path, False)
            self.store.cancel_on_disconnect(presence_path)
        except StoreError as e:
            # the last-will write is still registered and will flip the flag for us
            logger.warning("Could not mark %s as disconnected in room %s: %s", self.player_name, code, e)

        self._reset_room()
        logger.info("%s left room %s", self.player_name, code)

    # --- QUICK MATCH ---
    def start_quick_match(self) -> QuickMatchResult:
        """Pair with a waiting player, or wait in the queue for one."""
        self._assert_not_in_room()
        if self._queue_key is not None:
            return Queued(self._queue_key)

        opponent = self._find_opponent()
        if opponent is None:
            return self._enqueue()

        opponent_key, entry = opponent
        code = self._unused_room_code()
        self._create_quick_match_room(code, entry.name)
        # tell the opponent where to go; they remove their own entry after joining
        self.store.update(
            join_path(QUEUE_PATH, opponent_key), {"roomCode": code, "status": QUEUE_MATCHED}
        )
        self._enter_room(code, is_host=True)
        self._quick_match_room = code
        self.start_game()
        logger.info("Quick match: %s paired with %s in room %s", self.player_name, entry.name, code)
        self.events.publish(QuickMatchFound(room_code=code, is_host=True))
        return Matched(self._handle())

    def cancel_quick_match(self) -> None:
        if self._quick_match_room is not None and self._quick_match_room == self.room_code:
            raise QuickMatchCommittedError("Already matched. The game cannot be cancelled anymore.")
        if self._queue_key is None:
            return
        self._leave_queue()
        logger.info("%s left the quick match queue", self.player_name)

    def expire_quick_match(self) -> bool:
        """Leave the queue if our entry is older than the configured timeout. Returns True if it did."""
        if self._queue_key is None or not self.settings.quick_match_timeout_sec:
            return False
        value = self.store.get(join_path(QUEUE_PATH, self._queue_key))
        if value is None:
            return False
        entry = QuickMatchEntry.model_validate(value)
        if entry.room_code or not self._is_expired(entry):
            return False
        self._leave_queue()
        logger.info("%s: quick match timed out", self.player_name)
        return True

    # --- PRIVATE HELPERS ---
    def _enter_room(self, code: str, is_host: bool) -> None:
        """All or nothing: if the store fails halfway, the service is left outside any room."""
        self.room_code = code
        self.is_host = is_host
        try:
            self._setup_presence(code)
            self.chat = ChatService(
                self.store, self.events, code, self.player_name, self.settings.chat_history_limit
            )
            self.chat.start()
            self._subscriptions.append(
                self.store.subscribe_value(room_path(code, "players"), self._on_players)
            )
            self._subscriptions.append(
                self.store.subscribe_value(room_path(code, "status"), self._on_status)
            )
        except StoreError as e:
            logger.warning("%s could not enter room %s: %s", self.player_name, code, e)
            self._release_room()
            self._discard_will(room_path(code, "players", self.player_key, "connected"))
            self._reset_room()
            raise
        if is_host:
            self._subscriptions.append(self.events.subscribe(GameFinished, self._on_game_finished))

    def _release_room(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []
        if self.synchronizer is not None:
            self.synchronizer.stop()
        if self.chat is not None:
            self.chat.stop()

    def _reset_room(self) -> None:
        self.room_code = None
        self.is_host = False
        self.synchronizer = None
        self.chat = None
        self._presence = {}
        self._quick_match_room = None

    def _discard(self, path: str) -> None:
        try:
            self.store.remove(path)
        except StoreError as e:
            logger.warning("Could not remove %s: %s", path, e)

    def _discard_will(self, path: str) -> None:
        try:
            self.store.cancel_on_disconnect(path)
        except StoreError as e:
            logger.warning("Could not cancel the disconnect write on %s: %s", path, e)

    def _setup_presence(self, code: str) -> None:
        path = room_path(code, "players", self.player_key, "connected")
        self.store.put(path, True)
        self.store.on_disconnect(path, False)

    def _attach_synchronizer(self) -> GameSynchronizer:
        if self.synchronizer is None:
            assert self.room_code is not None
            self.synchronizer = GameSynchronizer(
                self.store, self.events, self.room_code, self.player_name, self.is_host
            )
            self.synchronizer.start()
        return self.synchronizer

    def _on_players(self, value: Any) -> None:
        if self.room_code is None:
            return
        players = {}
        for key, player in (value or {}).items():
            try:
                players[key] = RoomPlayerRecord.model_validate(player)
            except ValidationError as e:
                logger.warning("Room %s: ignoring malformed player %s: %s", self.room_code, key, e)

        ordered = sorted(players.values(), key=lambda p: (p.joined_at, not p.is_host))
        self.events.publish(PlayersChanged(self.room_code, tuple(p.name for p in ordered)))

        for player in ordered:
            previous = self._presence.get(player.name)
            self._presence[player.name] = player.connected
            if previous is None or previous == player.connected:
                continue
            if player.is_host and not player.connected:
                # no host migration: the room stays without an authority until the host is back
                logger.warning("Room %s: host %s disconnected", self.room_code, player.name)
            self.events.publish(
                PresenceChanged(self.room_code, player.name, player.connected, player.is_host)
            )

    def _on_status(self, value: Any) -> None:
        if self.room_code is None or value is None:
            return
        if value == Status.PLAYING and self.synchronizer is None:
            self._attach_synchronizer()
        self.events.publish(RoomStatusChanged(self.room_code, str(value)))

    def _on_game_finished(self, event: GameFinished) -> None:
        """Host: record the outcome on the room."""
        if self.room_code is None or self.synchronizer is None or self.synchronizer.game is None:
            return
        game = self.synchronizer.game
        if game.status != Status.FINISHED:
            return
        winner = game.players[event.winner].name if event.winner is not None else None
        result = GameResultRecord(
            winner=winner,
            winner_index=event.winner,
            is_draw=event.is_draw,
            final_scores=[
                PlayerRecord(
                    name=game.players[index].name,
                    is_host=game.players[index].is_host,
                    score=score,
                    color=game.players[index].color,
                )
                for index, score in event.final_scores
            ],
        )
        try:
            self.store.update(
                room_path(self.room_code),
                {
                    "status": Status.FINISHED.value,
                    "gameResult": result.to_wire(),
                    "gameEndedAt": SERVER_TIMESTAMP,
                },
            )
        except StoreError as e:
            logger.error("Room %s: could not record the game result: %s", self.room_code, e)
            return
        self._post_system(game_over_message(winner), MessageType.GAME)

    def _post_system(self, text: str, message_type: MessageType) -> None:
        if self.chat is None:
            return
        try:
            self.chat.system(text, message_type)
        except StoreError as e:
            logger.warning("Room %s: could not post %r: %s", self.room_code, text, e)

    def _find_opponent(self) -> Optional[tuple[str, QuickMatchEntry]]:
        queue = self.store.get(QUEUE_PATH) or {}
        for key, value in queue.items():
            if key == self.player_key:
                continue
            try:
                entry = QuickMatchEntry.model_validate(value)
            except ValidationError:
                logger.warning("Ignoring malformed quick match entry %s", key)
                continue
            if entry.status != QUEUE_WAITING or entry.room_code or entry.name == self.player_name:
                continue
            if self._is_expired(entry):
                continue
            return key, entry
        return None

    def _enqueue(self) -> Queued:
        entry = QuickMatchEntry(name=self.player_name, status=QUEUE_WAITING).to_wire()
        entry["joinedAt"] = SERVER_TIMESTAMP
        path = join_path(QUEUE_PATH, self.player_key)
        self.store.put(path, entry)
        self._queue_key = self.player_key
        self._queue_subscription = self.store.subscribe_value(path, self._on_queue_entry)
        logger.info("%s is waiting for a quick match", self.player_name)
        return Queued(self.player_key)

    def _on_queue_entry(self, value: Any) -> None:
        if value is None or self._queue_key is None:
            return
        try:
            entry = QuickMatchEntry.model_validate(value)
        except ValidationError:
            logger.warning("Ignoring malformed quick match entry %s", self._queue_key)
            return
        if not entry.room_code:
            return

        self._leave_queue()
        self._enter_room(entry.room_code, is_host=False)
        self._quick_match_room = entry.room_code
        logger.info("Quick match: %s joins room %s", self.player_name, entry.room_code)
        self.events.publish(QuickMatchFound(room_code=entry.room_code, is_host=False))

    def _leave_queue(self) -> None:
        if self._queue_subscription is not None:
            self._queue_subscription.cancel()
            self._queue_subscription = None
        if self._queue_key is not None:
            key, self._queue_key = self._queue_key, None
            self.store.remove(join_path(QUEUE_PATH, key))

    def _create_quick_match_room(self, code: str, opponent: str) -> None:
        room = RoomRecord(
            code=code,
            host=self.player_name,
            max_players=2,
            grid_size=self.settings.quick_match_grid_size,
            status=Status.WAITING,
            is_quick_match=True,
            players={
                self.player_key: RoomPlayerRecord(name=self.player_name, is_host=True),
                sanitize_key(opponent): RoomPlayerRecord(name=opponent),
            },
        )
        self.store.put(room_path(code), self._room_to_wire(room))

    def _is_expired(self, entry: QuickMatchEntry) -> bool:
        timeout = self.settings.quick_match_timeout_sec
        return bool(timeout) and self.clock() - entry.joined_at > timeout * 1000

    def _unused_room_code(self) -> str:
        alphabet = self.settings.room_code_alphabet
        for _ in range(self.settings.room_code_attempts):
            code = "".join(
                self.rng.choice(alphabet) for _ in range(self.settings.room_code_length)
            )
            if self.store.get(room_path(code)) is None:
                return code
            logger.warning("Room code %s is taken, trying another one", code)
        raise RoomCodeUnavailableError(
            f"No free room code found after {self.settings.room_code_attempts} attempts."
        )

    def _fetch_room(self, code: str) -> RoomRecord:
        value = self.store.get(room_path(code))
        if value is None:
            raise RoomNotFoundError("Room not found. Please check the code.")
        try:
            return RoomRecord.model_validate(value)
        except (ValidationError, GameError) as e:
            raise RoomNotFoundError(f"Room {code} is unreadable: {e}") from e

    def _room_to_wire(self, room: RoomRecord) -> dict[str, Any]:
        wire = room.to_wire()
        wire["createdAt"] = SERVER_TIMESTAMP
        for player in wire["players"].values():
            player["joinedAt"] = SERVER_TIMESTAMP
        return wire

    def _validate_room_settings(self, max_players: int, grid_size: int) -> None:
        s = self.settings
        if not s.min_players <= max_players <= s.max_players:
            raise InvalidRequestError(
                f"Rooms hold {s.min_players}-{s.max_players} players, got {max_players}."
            )
        if not s.min_grid_size <= grid_size <= s.max_grid_size:
            raise InvalidRequestError(
                f"Grid size must be within {s.min_grid_size}-{s.max_grid_size}, got {grid_size}."
            )

    def _assert_host(self) -> None:
        if self.room_code is None:
            raise RoomError("Not in a room.")
        if not self.is_host:
            raise NotHostError("Only the host can do this.")

    def _assert_not_in_room(self) -> None:
        if self.room_code is not None:
            raise RoomError(f"Already in room {self.room_code}. Leave it first.")

    def _handle(self) -> RoomHandle:
        assert self.room_code is not None
        invite_link = f"{self.settings.invite_base_url}#join={self.room_code}"
        return RoomHandle(code=self.room_code, is_host=self.is_host, invite_link=invite_link)
