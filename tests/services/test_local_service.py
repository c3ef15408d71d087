"""Unit tests for src/services/local_service.py"""

from typing import Callable

import pytest

from src.core.config import Settings
from src.core.events import EventBus, GameFinished, MoveApplied
from src.core.exceptions import LineAlreadyDrawnError
from src.core.shared_types import Status
from src.dots.grid import Grid, Line, all_lines
from src.services.local_service import LocalGameService


@pytest.fixture
def service() -> LocalGameService:
    return LocalGameService(EventBus(), ["Alice", "Bob", "Carol"], 3)


def test_current_player_always_plays(service: LocalGameService, record_events: Callable) -> None:
    events = record_events(service.events, MoveApplied)
    service.play_line(Line.horizontal(0, 0))
    service.play_line(Line.horizontal(1, 0))
    service.play_line(Line.vertical(0, 0))
    result = service.play_line(Line.vertical(0, 1))

    assert [event.player_index for event in events.received] == [0, 1, 2, 0]
    assert result.completed_boxes and not result.turn_advanced
    assert events.received[-1].completed_boxes == ((0, 0),)
    assert service.game.current_player == 0


def test_illegal_move_is_raised(service: LocalGameService) -> None:
    service.play_line(Line.horizontal(0, 0))
    with pytest.raises(LineAlreadyDrawnError):
        service.play_line(Line.horizontal(0, 0))
    assert service.game.current_player == 1


def test_play_point(service: LocalGameService) -> None:
    grid = Grid(3)
    assert service.play_point(70, 70, grid) is None  # middle of a box
    result = service.play_point(70, 52, grid)
    assert result is not None and result.line == Line.horizontal(0, 0)
    # the same spot again: the drawn line is skipped and nothing else is close enough
    assert service.play_point(70, 52, grid) is None


def test_play_point_uses_configured_ratios() -> None:
    service = LocalGameService(EventBus(), ["Alice", "Bob"], 3, Settings(line_hit_ratio=0.1))
    assert service.play_point(70, 58, Grid(3)) is None
    assert service.play_point(70, 53, Grid(3)) is not None


def test_game_finishes_and_rematch(service: LocalGameService, record_events: Callable) -> None:
    events = record_events(service.events, GameFinished)
    for line in all_lines(3):
        service.play_line(line)

    assert service.game.status == Status.FINISHED
    assert len(events.received) == 1
    assert events.received[0] == GameFinished(
        winner=service.game.result.winner,
        is_draw=service.game.result.is_draw,
        final_scores=service.game.result.final_scores,
    )
    assert service.play_point(70, 52, Grid(3)) is None

    game = service.rematch()
    assert game.status == Status.PLAYING
    assert game.lines == set()
    assert [p.name for p in game.players] == ["Alice", "Bob", "Carol"]
