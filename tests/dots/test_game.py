"""Unit tests for /src/dots/game.py"""

import random

import pytest

from src.core.exceptions import (
    GameNotInProgressError,
    GameStateError,
    IllegalMoveError,
    LineAlreadyDrawnError,
    LineOutOfBoundsError,
    NotYourTurnError,
)
from src.core.models import BoxModel, GameModel, PlayerModel
from src.core.shared_types import PLAYER_COLORS, Status
from src.dots.game import Game, determine_result
from src.dots.grid import Box, Line, all_lines, total_boxes


@pytest.fixture
def game() -> Game:
    """Two players on a 3x3 grid (4 boxes)."""
    return Game.new_game(["Alice", "Bob"], 3, host="Alice")


def play(game: Game, *keys: str) -> None:
    """Play the lines in order, each by whoever's turn it is."""
    for key in keys:
        game.apply_move(Line.from_key(key), game.current_player)


# --- NEW GAME ---
def test_new_game(game: Game) -> None:
    assert game.status == Status.PLAYING
    assert game.current_player == 0
    assert game.lines == set()
    assert game.boxes == {}
    assert [p.name for p in game.players] == ["Alice", "Bob"]
    assert [p.color for p in game.players] == list(PLAYER_COLORS[:2])
    assert game.players[0].is_host and not game.players[1].is_host
    assert game.remaining_lines() == 12
    assert game.result is None


@pytest.mark.parametrize("names", [["Solo"], ["a", "b", "c", "d", "e"]])
def test_new_game_player_count(names: list[str]) -> None:
    with pytest.raises(GameStateError):
        Game.new_game(names, 3)


def test_new_game_duplicate_names() -> None:
    with pytest.raises(GameStateError):
        Game.new_game(["Alice", "Alice"], 3)


# --- MOVES ---
def test_move_without_box_passes_the_turn(game: Game) -> None:
    result = game.apply_move(Line.horizontal(0, 0), 0)
    assert result.turn_advanced
    assert result.completed_boxes == ()
    assert not result.finished
    assert game.current_player == 1
    assert game.line_owners[Line.horizontal(0, 0)] == 0


def test_completing_a_box_keeps_the_turn(game: Game) -> None:
    """Alternate four lines around box (0, 0): the player drawing the last one owns it and plays again."""
    play(game, "horizontal-0-0", "horizontal-1-0", "vertical-0-0")
    closer = game.current_player
    assert closer == 1

    result = game.apply_move(Line.vertical(0, 1), closer)

    assert result.completed_boxes == (Box(0, 0),)
    assert not result.turn_advanced
    assert game.current_player == closer
    assert game.boxes == {Box(0, 0): closer}
    assert game.players[closer].score == 1
    assert game.players[1 - closer].score == 0


def test_one_line_can_complete_two_boxes(game: Game) -> None:
    play(
        game,
        "horizontal-0-0",
        "horizontal-1-0",
        "vertical-0-0",
        "horizontal-0-1",
        "horizontal-1-1",
        "vertical-0-2",
    )
    player = game.current_player
    result = game.apply_move(Line.vertical(0, 1), player)
    assert set(result.completed_boxes) == {Box(0, 0), Box(0, 1)}
    assert game.players[player].score == 2
    assert game.current_player == player


def test_already_drawn_line_is_rejected(game: Game) -> None:
    play(game, "horizontal-0-0")
    before = game.clone()
    with pytest.raises(LineAlreadyDrawnError):
        game.apply_move(Line.horizontal(0, 0), game.current_player)
    assert game == before


def test_out_of_turn_is_rejected(game: Game) -> None:
    with pytest.raises(NotYourTurnError):
        game.apply_move(Line.horizontal(0, 0), 1)
    assert game.lines == set()
    assert game.current_player == 0


def test_out_of_bounds_is_rejected(game: Game) -> None:
    with pytest.raises(LineOutOfBoundsError):
        game.apply_move(Line.vertical(2, 0), 0)


def test_errors_are_illegal_moves() -> None:
    for error in (LineAlreadyDrawnError, LineOutOfBoundsError, NotYourTurnError, GameNotInProgressError):
        assert issubclass(error, IllegalMoveError)


def test_duplicate_delivery_never_scores_twice(game: Game) -> None:
    play(game, "horizontal-0-0", "horizontal-1-0", "vertical-0-0", "vertical-0-1")
    scores = game.scores()
    with pytest.raises(IllegalMoveError):
        game.apply_move(Line.vertical(0, 1), game.current_player)
    assert game.scores() == scores
    assert len(game.boxes) == 1


# --- FULL GAMES ---
def test_full_game_finishes(game: Game) -> None:
    for line in all_lines(3):
        result = game.apply_move(line, game.current_player)
    assert result.finished
    assert game.status == Status.FINISHED
    assert len(game.boxes) == total_boxes(3)
    assert game.remaining_lines() == 0
    assert game.result is not None
    assert sum(score for _, score in game.result.final_scores) == 4


def test_no_move_after_the_game_ended(game: Game) -> None:
    for line in all_lines(3):
        game.apply_move(line, game.current_player)
    with pytest.raises(GameNotInProgressError):
        game.apply_move(Line.horizontal(0, 0), game.current_player)


@pytest.mark.parametrize("seed", range(10))
def test_random_games_keep_their_invariants(seed: int) -> None:
    """Random legal play: boxes never exceed (N-1)^2, scores always equal the owned boxes."""
    rng = random.Random(seed)
    size = rng.randint(2, 6)
    names = [f"player{i}" for i in range(rng.randint(2, 4))]
    game = Game.new_game(names, size)
    lines = list(all_lines(size))
    rng.shuffle(lines)

    for line in lines:
        player = game.current_player
        boxes_before = len(game.boxes)
        result = game.apply_move(line, player)

        assert len(game.boxes) <= total_boxes(size)
        assert [p.score for p in game.players] == game.scores()
        assert result.turn_advanced == (len(game.boxes) == boxes_before)
        if not result.turn_advanced:
            assert game.current_player == player
        assert result.finished == (len(game.boxes) == total_boxes(size))

    assert game.status == Status.FINISHED


# --- RESULT ---
def test_unique_winner() -> None:
    result = determine_result([3, 5, 2])
    assert result.winner == 1
    assert not result.is_draw
    assert result.final_scores == ((1, 5), (0, 3), (2, 2))


def test_draw() -> None:
    result = determine_result([4, 4])
    assert result.winner is None
    assert result.is_draw
    assert result.final_scores == ((0, 4), (1, 4))


def test_draw_between_leaders_only() -> None:
    result = determine_result([1, 4, 4, 0])
    assert result.is_draw
    assert result.winner is None


# --- BOUNDARY MODEL ---
def test_model_round_trip(game: Game) -> None:
    play(game, "horizontal-0-0", "horizontal-1-0", "vertical-0-0", "vertical-0-1")
    model = game.to_model()
    assert model.lines == ["horizontal-0-0", "horizontal-1-0", "vertical-0-0", "vertical-0-1"]
    assert model.boxes == [BoxModel(0, 0, 1)]
    assert Game.from_model(model) == game


def test_from_model_recomputes_scores() -> None:
    model = GameModel(
        players=[PlayerModel("Alice", score=3), PlayerModel("Bob")],
        grid_size=3,
        lines=["horizontal-0-0", "horizontal-1-0", "vertical-0-0", "vertical-0-1"],
        boxes=[BoxModel(0, 0, 1)],
        current_player=1,
    )
    game = Game.from_model(model)
    assert [p.score for p in game.players] == [0, 1]


@pytest.mark.parametrize(
    "changes",
    [
        {"status": "paused"},
        {"current_player": 2},
        {"lines": ["horizontal-0-5"]},
        {"lines": ["not-a-line"]},
        {"boxes": [BoxModel(0, 0, 0)]},  # box without its four lines
        {"line_owners": {"horizontal-0-0": 0}},  # owner of an undrawn line
    ],
)
def test_from_model_rejects_invalid_state(changes: dict) -> None:
    model = GameModel(players=[PlayerModel("Alice"), PlayerModel("Bob")], grid_size=3)
    for attribute, value in changes.items():
        setattr(model, attribute, value)
    with pytest.raises(GameStateError):
        Game.from_model(model)


def test_clone_is_independent(game: Game) -> None:
    copy = game.clone()
    copy.apply_move(Line.horizontal(0, 0), 0)
    assert game.lines == set()
    assert game.player_index("Bob") == 1
    assert game.player_index("Nobody") is None
