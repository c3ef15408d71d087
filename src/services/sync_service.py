"""
Keeps one participant's copy of a networked game consistent with the room's authoritative snapshot.

Channels (all under rooms/<CODE>):
- gameState: the full snapshot. Only the host writes it. Receivers replace their copy entirely.
- moves: push log of moves. For the host these are proposals to validate and fold into the next
  snapshot; for everybody else they are incremental updates applied optimistically until the next
  snapshot arrives.

The snapshot always wins: optimistic moves it does not contain are dropped (and reported).
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from src.api.models import BoxRecord, GameStateRecord, LineRecord, MoveMessage
from src.core.events import (
    EventBus,
    GameFinished,
    MoveApplied,
    MoveRejected,
    SnapshotApplied,
    StateDesync,
    Subscription,
)
from src.core.exceptions import (
    GameError,
    GameNotInProgressError,
    IllegalMoveError,
    NotHostError,
    NotYourTurnError,
    StoreError,
)
from src.core.shared_types import Status
from src.db.store import SERVER_TIMESTAMP, ReplicatedStore, join_path
from src.dots.game import Game, MoveResult
from src.dots.grid import Grid, Line
from src.dots.input import BUFFER_RATIO, HIT_RATIO, resolve_line

logger = logging.getLogger(__name__)


def room_path(room_code: str, *parts: str) -> str:
    return join_path("rooms", room_code, *parts)


@dataclass
class _SyncState:
    """Everything a publish may need to roll back."""

    game_id: str
    revision: int
    authoritative: Optional[Game]
    mirror: Optional[Game]
    pending: list[Line]


class GameSynchronizer:
    """One per participant per room."""

    def __init__(
        self,
        store: ReplicatedStore,
        events: EventBus,
        room_code: str,
        player_name: str,
        is_host: bool,
    ) -> None:
        self.store = store
        self.events = events
        self.room_code = room_code
        self.player_name = player_name
        self.is_host = is_host

        self.game_id = ""
        self.revision = 0
        # last confirmed state (for the host: the authoritative state itself)
        self._authoritative: Optional[Game] = None
        # what this participant shows: confirmed state + pending optimistic moves
        self._mirror: Optional[Game] = None
        self._pending: list[Line] = []
        self._seen_moves: set[str] = set()
        self._finished_announced: Optional[str] = None
        self._subscriptions: list[Subscription] = []

    # --- LIFETIME ---
    def start(self) -> None:
        self._subscriptions = [
            self.store.subscribe_value(
                room_path(self.room_code, "gameState"), self._on_snapshot
            ),
            self.store.subscribe_child_added(
                room_path(self.room_code, "moves"), self._on_move
            ),
        ]

    def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []

    # --- QUERIES ---
    @property
    def client_id(self) -> str:
        return self.store.client_id

    @property
    def game(self) -> Optional[Game]:
        return self._mirror

    @property
    def confirmed_game(self) -> Optional[Game]:
        return self._authoritative

    @property
    def pending_lines(self) -> tuple[str, ...]:
        return tuple(line.key for line in self._pending)

    @property
    def local_player_index(self) -> Optional[int]:
        if self._mirror is None:
            return None
        return self._mirror.player_index(self.player_name)

    def can_move(self) -> bool:
        game = self._mirror
        return (
            game is not None
            and game.status == Status.PLAYING
            and self.local_player_index == game.current_player
        )

    # --- COMMANDS ---
    def publish_new_game(self, game: Game, room_fields: Optional[dict[str, Any]] = None) -> None:
        """Host only: start (or restart) the room's game. Extra room fields go out in the same write."""
        if not self.is_host:
            raise NotHostError("Only the host can start a game.")
        previous = self._capture()
        self.game_id = uuid.uuid4().hex
        self.revision = 0
        self._seen_moves.clear()
        fields = dict(room_fields or {})
        # moves of the previous game are of no use anymore
        fields["moves"] = None
        self._commit_and_publish(game, previous, fields)
        self._finished_announced = None
        logger.info("Room %s: new game %s published", self.room_code, self.game_id)

    def submit_move(self, line: Line) -> MoveResult:
        """
        Draw a line as the local player.
        ----

        Validated against this participant's current copy, committed locally, then published.
        If publishing fails, the local copy is rolled back and the error re-raised.
        """
        if self._mirror is None:
            raise GameNotInProgressError("No game in progress in this room.")
        player_index = self.local_player_index
        if player_index is None:
            raise NotYourTurnError(f"{self.player_name} is not playing in this game.")

        if self.is_host:
            return self._apply_as_host(line, player_index, broadcast=True)
        return self._propose(line, player_index)

    def play_point(
        self,
        x: float,
        y: float,
        grid: Grid,
        hit_ratio: float = HIT_RATIO,
        buffer_ratio: float = BUFFER_RATIO,
    ) -> Optional[MoveResult]:
        """Resolve a pointer position to a line and submit it. A near miss does nothing."""
        if self._mirror is None or not self.can_move():
            return None
        line = resolve_line(x, y, grid, self._mirror.lines, hit_ratio, buffer_ratio)
        if line is None:
            return None
        return self.submit_move(line)

    # -- HOST SIDE ---
    def _apply_as_host(self, line: Line, player_index: int, broadcast: bool) -> MoveResult:
        assert self._authoritative is not None
        candidate = self._authoritative.clone()
        result = candidate.apply_move(line, player_index)

        self._commit_and_publish(candidate, self._capture())
        if broadcast:
            self._broadcast(line, result)
        self._announce(result, confirmed=True)
        return result

    def _fold_proposal(self, message: MoveMessage, line: Line) -> None:
        """Re-validate a non-host's move against the authoritative state (it may be stale by now)."""
        game = self._authoritative
        if game is None:
            return
        if game.player_index(message.player) != message.acting_player_index:
            self._reject(message, "player name and index do not match")
            return
        try:
            self._apply_as_host(line, message.acting_player_index, broadcast=False)
        except IllegalMoveError as e:
            self._reject(message, str(e))
        except StoreError as e:
            logger.error("Room %s: could not publish move %s: %s", self.room_code, message.line_key, e)

    def _reject(self, message: MoveMessage, reason: str) -> None:
        logger.warning(
            "Room %s: rejected move %s by %s: %s",
            self.room_code,
            message.line_key,
            message.player,
            reason,
        )
        self.events.publish(
            MoveRejected(
                line_key=message.line_key,
                player_index=message.acting_player_index,
                reason=reason,
            )
        )
        # a fresh snapshot makes the proposer drop its optimistic copy of the move
        assert self._authoritative is not None
        try:
            self._commit_and_publish(self._authoritative, self._capture())
        except StoreError as e:
            logger.error("Room %s: could not republish snapshot: %s", self.room_code, e)

    def _commit_and_publish(
        self,
        game: Game,
        previous: _SyncState,
        room_fields: Optional[dict[str, Any]] = None,
    ) -> None:
        self.revision += 1
        self._authoritative = game
        self._mirror = game.clone()
        self._pending = []
        record = GameStateRecord.from_model(game.to_model(), self.game_id, self.revision)
        fields = dict(room_fields or {})
        fields["gameState"] = record.to_wire()
        try:
            self.store.update(room_path(self.room_code), fields)
        except StoreError:
            self._restore(previous)
            raise

    def _broadcast(self, line: Line, result: MoveResult) -> None:
        message = self._move_message(line, result)
        try:
            self._seen_moves.add(self.store.push(room_path(self.room_code, "moves"), message))
        except StoreError as e:
            # the snapshot went out already; the broadcast only speeds things up
            logger.warning("Room %s: move broadcast failed: %s", self.room_code, e)

    # -- NON-HOST SIDE ---
    def _propose(self, line: Line, player_index: int) -> MoveResult:
        assert self._mirror is not None
        candidate = self._mirror.clone()
        result = candidate.apply_move(line, player_index)

        previous = self._capture()
        self._mirror = candidate
        self._pending.append(line)
        # delivery is synchronous: the confirming snapshot may arrive before push returns
        self.events.publish(self._move_event(result, confirmed=False))
        try:
            key = self.store.push(
                room_path(self.room_code, "moves"), self._move_message(line, result)
            )
        except StoreError:
            self._restore(previous)
            self.events.publish(StateDesync(self.game_id, self.revision, (line.key,)))
            raise
        self._seen_moves.add(key)
        return result

    def _apply_incremental(self, message: MoveMessage, line: Line) -> None:
        mirror = self._mirror
        if mirror is None:
            return
        if line in mirror.lines:
            logger.debug("Room %s: duplicate move %s ignored", self.room_code, message.line_key)
            return
        candidate = mirror.clone()
        try:
            result = candidate.apply_move(line, message.acting_player_index)
        except IllegalMoveError as e:
            logger.info(
                "Room %s: move %s does not fit the local copy (%s), waiting for the next snapshot",
                self.room_code,
                message.line_key,
                e,
            )
            return

        announced = {(box.row, box.col) for box in message.completed_boxes}
        computed = {(box.row, box.col) for box in result.completed_boxes}
        if announced != computed:
            logger.warning(
                "Room %s: move %s announced boxes %s but completes %s locally",
                self.room_code,
                message.line_key,
                sorted(announced),
                sorted(computed),
            )
        self._mirror = candidate
        self._pending.append(line)
        self.events.publish(self._move_event(result, confirmed=False))

    # --- SUBSCRIPTION CALLBACKS ---
    def _on_snapshot(self, value: Any) -> None:
        if value is None:
            return
        try:
            record = GameStateRecord.model_validate(value)
            game = Game.from_model(record.to_model())
        except (ValidationError, GameError) as e:
            logger.warning("Room %s: ignoring malformed snapshot: %s", self.room_code, e)
            return

        if record.game_id == self.game_id and record.revision <= self.revision:
            logger.debug(
                "Room %s: snapshot revision %s already applied", self.room_code, record.revision
            )
            return

        drawn = {line.key for line in game.lines}
        discarded: tuple[str, ...] = ()
        if record.game_id == self.game_id:
            discarded = tuple(line.key for line in self._pending if line.key not in drawn)
        else:
            self._seen_moves.clear()

        self.game_id = record.game_id
        self.revision = record.revision
        self._authoritative = game
        self._mirror = game.clone()
        self._pending = []

        if discarded:
            logger.warning(
                "Room %s: snapshot %s overrides optimistic move(s) %s",
                self.room_code,
                record.revision,
                ", ".join(discarded),
            )
            self.events.publish(StateDesync(record.game_id, record.revision, discarded))
        self.events.publish(SnapshotApplied(record.game_id, record.revision))
        if game.status == Status.FINISHED:
            self._announce_finished(game)

    def _on_move(self, key: str, value: Any) -> None:
        if key in self._seen_moves:
            return
        self._seen_moves.add(key)
        try:
            message = MoveMessage.model_validate(value)
        except (ValidationError, GameError) as e:
            logger.warning("Room %s: ignoring malformed move %s: %s", self.room_code, key, e)
            return

        if message.client_id == self.client_id:
            return
        if message.game_id != self.game_id:
            logger.debug("Room %s: move %s belongs to another game", self.room_code, key)
            return

        line = message.line.to_line()
        if self.is_host:
            self._fold_proposal(message, line)
        else:
            self._apply_incremental(message, line)

    # --- HELPERS ---
    def _move_message(self, line: Line, result: MoveResult) -> dict[str, Any]:
        message = MoveMessage(
            game_id=self.game_id,
            line_key=line.key,
            line=LineRecord.from_line(line),
            acting_player_index=result.player_index,
            player=self.player_name,
            completed_boxes=[
                BoxRecord(row=box.row, col=box.col, owner=result.player_index)
                for box in result.completed_boxes
            ],
            client_id=self.client_id,
        ).to_wire()
        message["timestamp"] = SERVER_TIMESTAMP
        return message

    def _move_event(self, result: MoveResult, confirmed: bool) -> MoveApplied:
        return MoveApplied(
            line_key=result.line.key,
            player_index=result.player_index,
            completed_boxes=tuple((box.row, box.col) for box in result.completed_boxes),
            turn_advanced=result.turn_advanced,
            confirmed=confirmed,
        )

    def _announce(self, result: MoveResult, confirmed: bool) -> None:
        self.events.publish(self._move_event(result, confirmed))
        if result.finished and self._authoritative is not None:
            self._announce_finished(self._authoritative)

    def _announce_finished(self, game: Game) -> None:
        if self._finished_announced == self.game_id:
            return
        result = game.result
        if result is None:
            return
        self._finished_announced = self.game_id
        logger.info("Room %s: game %s finished, winner: %s", self.room_code, self.game_id, result.winner)
        self.events.publish(
            GameFinished(
                winner=result.winner,
                is_draw=result.is_draw,
                final_scores=result.final_scores,
            )
        )

    def _capture(self) -> _SyncState:
        return _SyncState(
            game_id=self.game_id,
            revision=self.revision,
            authoritative=self._authoritative,
            mirror=self._mirror,
            pending=list(self._pending),
        )

    def _restore(self, state: _SyncState) -> None:
        self.game_id = state.game_id
        self.revision = state.revision
        self._authoritative = state.authoritative
        self._mirror = state.mirror
        self._pending = state.pending
