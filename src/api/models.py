"""
Wire records of the replicated store, and request models.

Records are written camelCase (the shared format of every participant) and validated on the way in.
Box and line owners are always player indices inside the core; records written by older clients
that used player names are translated to indices here, at the boundary.
"""

from typing import Any, Optional, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from src.core.exceptions import InvalidLineKeyError, InvalidRequestError, SnapshotError
from src.core.models import BoxModel, GameModel, PlayerModel
from src.core.shared_types import MessageType, Orientation, Status
from src.dots.grid import Line

PlayerName = str
LineKey = str
OwnerRef = int | str

MAX_NAME_LENGTH = 20


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# --- GAME STATE ---
class LineRecord(Record):
    orientation: Orientation
    row: int
    col: int

    @classmethod
    def from_line(cls, line: Line) -> Self:
        return cls(orientation=line.orientation, row=line.row, col=line.col)

    def to_line(self) -> Line:
        return Line(self.orientation, self.row, self.col)


class BoxRecord(Record):
    row: int
    col: int
    owner: OwnerRef


class PlayerRecord(Record):
    name: PlayerName
    is_host: bool = False
    score: int = 0
    color: Optional[str] = None


class GameStateRecord(Record):
    """Full snapshot of a game, written by the host only."""

    game_id: str = ""
    revision: int = 0
    status: Status = Status.PLAYING
    grid_size: int
    players: list[PlayerRecord]
    current_player: int = 0
    # the store drops empty collections, hence the defaults
    lines: list[LineKey] = Field(default_factory=list)
    line_owners: dict[LineKey, OwnerRef] = Field(default_factory=dict)
    boxes: list[BoxRecord] = Field(default_factory=list)

    @field_validator("lines")
    @classmethod
    def validate_line_keys(cls, value: list[str]) -> list[str]:
        for key in value:
            try:
                Line.from_key(key)
            except InvalidLineKeyError as e:
                raise SnapshotError(str(e)) from e
        return value

    @model_validator(mode="after")
    def canonical_owners(self) -> Self:
        """Translate owners given as player names into player indices."""
        names = [player.name for player in self.players]
        self.boxes = [
            BoxRecord(row=box.row, col=box.col, owner=_owner_index(box.owner, names))
            for box in self.boxes
        ]
        self.line_owners = {
            key: _owner_index(owner, names) for key, owner in self.line_owners.items()
        }
        return self

    @classmethod
    def from_model(cls, model: GameModel, game_id: str, revision: int) -> Self:
        return cls(
            game_id=game_id,
            revision=revision,
            status=Status(model.status),
            grid_size=model.grid_size,
            players=[
                PlayerRecord(name=p.name, is_host=p.is_host, score=p.score, color=p.color)
                for p in model.players
            ],
            current_player=model.current_player,
            lines=list(model.lines),
            line_owners=dict(model.line_owners),
            boxes=[BoxRecord(row=b.row, col=b.col, owner=b.owner) for b in model.boxes],
        )

    def to_model(self) -> GameModel:
        return GameModel(
            players=[
                PlayerModel(name=p.name, is_host=p.is_host, score=p.score, color=p.color)
                for p in self.players
            ],
            grid_size=self.grid_size,
            lines=list(self.lines),
            line_owners={key: int(owner) for key, owner in self.line_owners.items()},
            boxes=[BoxModel(b.row, b.col, int(b.owner)) for b in self.boxes],
            current_player=self.current_player,
            status=self.status.value,
        )


def _owner_index(owner: OwnerRef, names: list[str]) -> int:
    if isinstance(owner, int):
        return owner
    if owner in names:
        return names.index(owner)
    if owner.isdigit():
        return int(owner)
    raise SnapshotError(f"Unknown owner {owner!r}. Players: {names}")


class MoveMessage(Record):
    """A move, as proposed to the host and broadcast to the other participants."""

    game_id: str
    line_key: LineKey
    line: LineRecord
    acting_player_index: int
    player: PlayerName
    completed_boxes: list[BoxRecord] = Field(default_factory=list)
    client_id: str
    timestamp: int = 0

    @model_validator(mode="after")
    def line_matches_key(self) -> Self:
        if self.line.to_line().key != self.line_key:
            raise SnapshotError(
                f"Move line {self.line.to_line().key} does not match its key {self.line_key}."
            )
        return self


class GameResultRecord(Record):
    winner: Optional[PlayerName] = None
    winner_index: Optional[int] = None
    is_draw: bool
    final_scores: list[PlayerRecord] = Field(default_factory=list)


# --- ROOMS ---
class RoomPlayerRecord(Record):
    name: PlayerName
    is_host: bool = False
    joined_at: int = 0
    connected: bool = True


class RoomRecord(Record):
    """Everything at rooms/<CODE> except the logs (moves, chat), which are read through subscriptions."""

    code: str
    host: PlayerName
    max_players: int
    grid_size: int
    status: Status = Status.WAITING
    players: dict[str, RoomPlayerRecord] = Field(default_factory=dict)
    game_state: Optional[GameStateRecord] = None
    game_result: Optional[GameResultRecord] = None
    is_quick_match: bool = False
    created_at: int = 0

    def ordered_players(self) -> list[RoomPlayerRecord]:
        """Turn order: by join time, the host first when times are equal."""
        return sorted(self.players.values(), key=lambda p: (p.joined_at, not p.is_host))


class QuickMatchEntry(Record):
    name: PlayerName
    status: str = "waiting"
    joined_at: int = 0
    room_code: Optional[str] = None


# --- CHAT ---
class ChatMessageRecord(Record):
    player: PlayerName
    message: str
    timestamp: int = 0
    client_id: str = ""
    is_system: bool = False
    type: MessageType = MessageType.CHAT


# --- REQUEST MODELS ---
class PlayerNameMixin(BaseModel):
    player_name: str

    @field_validator("player_name")
    @classmethod
    def validate_player_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise InvalidRequestError("Player name cannot be empty.")
        if len(value) > MAX_NAME_LENGTH:
            raise InvalidRequestError(
                f"Player name is limited to {MAX_NAME_LENGTH} characters: {value!r}"
            )
        return value


class CreateRoomRequest(PlayerNameMixin):
    max_players: int = 2
    grid_size: int = 5


class JoinRoomRequest(PlayerNameMixin):
    code: str

    @field_validator("code")
    @classmethod
    def validate_code(cls, value: str) -> str:
        value = value.strip().upper()
        if not value.isalnum() or not value.isascii():
            raise InvalidRequestError(f"Cannot interpret {value!r} as a room code.")
        return value
