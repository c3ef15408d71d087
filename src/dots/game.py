"""
The Game class is the entrypoint into the domain layer for the service layer.
It is responsible for all the rules of a turn: line legality, box completion, scoring,
whose turn it is and when the game is over.
"""

import logging
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Optional, Self

from src.core.exceptions import (
    GameNotInProgressError,
    GameStateError,
    InvalidLineKeyError,
    LineAlreadyDrawnError,
    LineOutOfBoundsError,
    NotYourTurnError,
)
from src.core.models import BoxModel, GameModel, PlayerModel
from src.core.shared_types import Status, player_color
from src.dots.grid import Box, Line, total_boxes

logger = logging.getLogger(__name__)

MIN_PLAYERS = 2
MAX_PLAYERS = 4
MIN_GRID_SIZE = 2


@dataclass
class Player:
    index: int
    name: str
    color: str
    score: int = 0
    is_host: bool = False


@dataclass(frozen=True)
class GameResult:
    winner: Optional[int]
    is_draw: bool
    # (player index, score), highest score first
    final_scores: tuple[tuple[int, int], ...]


@dataclass(frozen=True)
class MoveResult:
    line: Line
    player_index: int
    completed_boxes: tuple[Box, ...]
    turn_advanced: bool
    finished: bool
    result: Optional[GameResult] = None


def determine_result(scores: list[int]) -> GameResult:
    """Unique highest score wins, a shared highest score is a draw."""
    best = max(scores)
    leaders = [index for index, score in enumerate(scores) if score == best]
    ranking = sorted(enumerate(scores), key=lambda item: -item[1])
    return GameResult(
        winner=leaders[0] if len(leaders) == 1 else None,
        is_draw=len(leaders) > 1,
        final_scores=tuple(ranking),
    )


@dataclass
class Game:
    # --- DOMAIN LAYER API CALLED BY SERVICES ---

    players: list[Player]
    grid_size: int
    lines: set[Line] = field(default_factory=set)
    line_owners: dict[Line, int] = field(default_factory=dict)
    # insertion ordered: order in which the boxes got completed
    boxes: dict[Box, int] = field(default_factory=dict)
    current_player: int = 0
    status: Status = Status.PLAYING

    @classmethod
    def new_game(
        cls, player_names: list[str], grid_size: int, host: Optional[str] = None
    ) -> Self:
        """Fresh game: no lines, first player to move."""
        _validate_setup(len(player_names), grid_size)
        if len(set(player_names)) != len(player_names):
            raise GameStateError(f"Player names must be unique: {player_names}")
        players = [
            Player(index=i, name=name, color=player_color(i), is_host=(name == host))
            for i, name in enumerate(player_names)
        ]
        return cls(players=players, grid_size=grid_size)

    @classmethod
    def from_model(cls, model: GameModel) -> Self:
        """Rebuild a Game from the boundary model. Scores are recomputed from the box owners."""

        # Validation
        if model.status not in [status.value for status in Status]:
            raise GameStateError(
                f"Invalid status: {model.status!r}. Pick one from {','.join(Status)}"
            )
        _validate_setup(len(model.players), model.grid_size)
        player_count = len(model.players)
        if not 0 <= model.current_player < player_count:
            raise GameStateError(f"Invalid current player: {model.current_player}")

        lines: set[Line] = set()
        for key in model.lines:
            line = _parse_line(key)
            if not line.is_within_bounds(model.grid_size):
                raise GameStateError(f"Line {key} does not fit a {model.grid_size}x{model.grid_size} grid.")
            lines.add(line)

        line_owners: dict[Line, int] = {}
        for key, owner in model.line_owners.items():
            line = _parse_line(key)
            if line not in lines:
                raise GameStateError(f"Owner recorded for undrawn line {key}.")
            _check_player_index(owner, player_count)
            line_owners[line] = owner

        boxes: dict[Box, int] = {}
        for box_model in model.boxes:
            box = Box(box_model.row, box_model.col)
            if not box.is_within_bounds(model.grid_size):
                raise GameStateError(f"Box {box} is outside the grid.")
            if not box.is_complete(lines):
                raise GameStateError(f"Box {box} is recorded but not all of its lines are drawn.")
            _check_player_index(box_model.owner, player_count)
            boxes[box] = box_model.owner

        players = [
            Player(
                index=i,
                name=p.name,
                color=p.color or player_color(i),
                score=p.score,
                is_host=p.is_host,
            )
            for i, p in enumerate(model.players)
        ]

        game = cls(
            players=players,
            grid_size=model.grid_size,
            lines=lines,
            line_owners=line_owners,
            boxes=boxes,
            current_player=model.current_player,
            status=Status(model.status),
        )
        game._reconcile_scores()
        return game

    def to_model(self) -> GameModel:
        """Encode back into the format the services use"""
        return GameModel(
            players=[
                PlayerModel(name=p.name, is_host=p.is_host, score=p.score, color=p.color)
                for p in self.players
            ],
            grid_size=self.grid_size,
            lines=[line.key for line in self.drawn_in_order()],
            line_owners={line.key: owner for line, owner in self.line_owners.items()},
            boxes=[BoxModel(box.row, box.col, owner) for box, owner in self.boxes.items()],
            current_player=self.current_player,
            status=self.status.value,
        )

    def clone(self) -> Self:
        return deepcopy(self)

    @property
    def is_finished(self) -> bool:
        return len(self.boxes) == total_boxes(self.grid_size)

    @property
    def result(self) -> Optional[GameResult]:
        if self.status != Status.FINISHED:
            return None
        return determine_result([player.score for player in self.players])

    def scores(self) -> list[int]:
        """Scores recomputed from the box owners (the cached Player.score must always match this)."""
        counts = [0] * len(self.players)
        for owner in self.boxes.values():
            counts[owner] += 1
        return counts

    def player_index(self, name: str) -> Optional[int]:
        return next((p.index for p in self.players if p.name == name), None)

    def remaining_lines(self) -> int:
        return 2 * self.grid_size * (self.grid_size - 1) - len(self.lines)

    def drawn_in_order(self) -> list[Line]:
        """Drawn lines in the order they were drawn (line_owners keeps insertion order)."""
        ordered = list(self.line_owners)
        # lines without a recorded owner (should not happen for games played through apply_move)
        ordered.extend(sorted(self.lines - set(self.line_owners)))
        return ordered

    def apply_move(self, line: Line, player_index: int) -> MoveResult:
        """
        Attempt to draw a line
        -----

        1. validate: game in progress, line on the board and not drawn yet, it is your turn
        2. draw the line and record its owner
        3. every adjacent box that is now closed is yours (+1 point each)
        4. closed a box? play again. Otherwise the turn passes on.
        5. all boxes closed? game over.

        Nothing is mutated when a check fails.
        """
        # make sure the game is (still) in progress
        if self.status != Status.PLAYING:
            raise GameNotInProgressError(f"Game is not in progress. status: {self.status}")

        if not line.is_within_bounds(self.grid_size):
            raise LineOutOfBoundsError(f"Line {line.key} is not on the board.")

        # re-delivery of the same move must never score twice
        if line in self.lines:
            raise LineAlreadyDrawnError(f"Line already drawn: {line.key}")

        # make sure it is your turn
        self._assert_your_turn(player_index)

        self._draw(line, player_index)
        completed = self._claim_completed_boxes(line, player_index)

        turn_advanced = not completed
        if turn_advanced:
            self._next_turn()

        if self.is_finished:
            self._change_status(Status.FINISHED)

        return MoveResult(
            line=line,
            player_index=player_index,
            completed_boxes=tuple(completed),
            turn_advanced=turn_advanced,
            finished=self.status == Status.FINISHED,
            result=self.result,
        )

    # -- PRIVATE HELPERS ---
    def _assert_your_turn(self, player_index: int) -> None:
        if player_index != self.current_player:
            turn_player = self.players[self.current_player].name
            raise NotYourTurnError(
                f"It is not your turn. Waiting for player {turn_player} to make a move first."
            )

    def _draw(self, line: Line, player_index: int) -> None:
        self.lines.add(line)
        self.line_owners[line] = player_index

    def _claim_completed_boxes(self, line: Line, player_index: int) -> list[Box]:
        completed = []
        for box in line.adjacent_boxes(self.grid_size):
            if box in self.boxes or not box.is_complete(self.lines):
                continue
            self.boxes[box] = player_index
            self.players[player_index].score += 1
            completed.append(box)
        return completed

    def _next_turn(self) -> None:
        self.current_player = (self.current_player + 1) % len(self.players)

    def _change_status(self, new_status: Status) -> None:
        self.status = new_status

    def _reconcile_scores(self) -> None:
        """The box owners are the source of truth for the score."""
        for player, score in zip(self.players, self.scores()):
            if player.score != score:
                logger.warning(
                    "Cached score %s of %s does not match owned boxes (%s); using %s",
                    player.score,
                    player.name,
                    score,
                    score,
                )
                player.score = score


def _validate_setup(player_count: int, grid_size: int) -> None:
    if not MIN_PLAYERS <= player_count <= MAX_PLAYERS:
        raise GameStateError(
            f"A game needs {MIN_PLAYERS}-{MAX_PLAYERS} players, got {player_count}."
        )
    if grid_size < MIN_GRID_SIZE:
        raise GameStateError(f"Grid size must be at least {MIN_GRID_SIZE}, got {grid_size}.")


def _check_player_index(index: int, player_count: int) -> None:
    if not 0 <= index < player_count:
        raise GameStateError(f"Invalid player index: {index}")


def _parse_line(key: str) -> Line:
    try:
        return Line.from_key(key)
    except InvalidLineKeyError as e:
        raise GameStateError(str(e)) from e
