"""Hot-seat game on one device. The process itself is the only authority; whoever's turn it is plays."""

import logging
from typing import Optional

from src.core.config import Settings
from src.core.events import EventBus, GameFinished, MoveApplied
from src.dots.game import Game, MoveResult
from src.dots.grid import Grid, Line
from src.dots.input import resolve_line

logger = logging.getLogger(__name__)


class LocalGameService:
    def __init__(
        self,
        events: EventBus,
        player_names: list[str],
        grid_size: int,
        settings: Optional[Settings] = None,
    ) -> None:
        self.events = events
        self.settings = settings or Settings()
        self.player_names = list(player_names)
        self.game = Game.new_game(self.player_names, grid_size)
        logger.info("Local game started: %s on a %sx%s grid", self.player_names, grid_size, grid_size)

    def play_line(self, line: Line) -> MoveResult:
        result = self.game.apply_move(line, self.game.current_player)
        self.events.publish(
            MoveApplied(
                line_key=line.key,
                player_index=result.player_index,
                completed_boxes=tuple((box.row, box.col) for box in result.completed_boxes),
                turn_advanced=result.turn_advanced,
            )
        )
        if result.result is not None:
            logger.info("Local game finished, winner: %s", result.result.winner)
            self.events.publish(
                GameFinished(
                    winner=result.result.winner,
                    is_draw=result.result.is_draw,
                    final_scores=result.result.final_scores,
                )
            )
        return result

    def play_point(self, x: float, y: float, grid: Grid) -> Optional[MoveResult]:
        """A near miss, or a click after the game is over, does nothing."""
        if self.game.result is not None:
            return None
        line = resolve_line(
            x,
            y,
            grid,
            self.game.lines,
            self.settings.line_hit_ratio,
            self.settings.line_buffer_ratio,
        )
        if line is None:
            return None
        return self.play_line(line)

    def rematch(self) -> Game:
        self.game = Game.new_game(self.player_names, self.game.grid_size)
        return self.game
