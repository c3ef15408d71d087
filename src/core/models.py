"""
Boundary layer data model(s).

These objects are used to communicate between the domain layer (src/dots) and the services.
The services translate them from/to the wire records of the replicated store (src/api/models.py),
so neither side depends on the other's representation.
"""

from dataclasses import dataclass, field

# Type aliases to make GameModel easier to read
LineKey = str
PlayerIndex = int


@dataclass
class PlayerModel:
    name: str
    is_host: bool = False
    score: int = 0
    color: str | None = None


@dataclass
class BoxModel:
    row: int
    col: int
    owner: PlayerIndex


@dataclass
class GameModel:
    """Transport-safe representation of a dots and boxes game."""

    players: list[PlayerModel]
    grid_size: int
    lines: list[LineKey] = field(default_factory=list)
    line_owners: dict[LineKey, PlayerIndex] = field(default_factory=dict)
    boxes: list[BoxModel] = field(default_factory=list)
    current_player: PlayerIndex = 0
    status: str = "playing"
