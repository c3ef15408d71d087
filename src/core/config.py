"""Application settings. Every knob can be overridden with a DOTS_<NAME> environment variable."""

import os
from dataclasses import dataclass, fields
from string import ascii_uppercase, digits
from typing import Self

ENV_PREFIX = "DOTS_"


@dataclass(frozen=True)
class Settings:
    # board
    default_grid_size: int = 5
    min_grid_size: int = 3
    max_grid_size: int = 7
    min_players: int = 2
    max_players: int = 4

    # rooms
    room_code_length: int = 4
    room_code_alphabet: str = ascii_uppercase + digits
    # Number of fresh codes tried before giving up on creating a room
    room_code_attempts: int = 5
    invite_base_url: str = ""

    # quick match
    quick_match_grid_size: int = 5
    # Queue entries older than this are ignored by matchers. 0 disables the timeout.
    quick_match_timeout_sec: int = 0

    # chat
    chat_history_limit: int = 100

    # input resolution, as fractions of the grid spacing
    line_hit_ratio: float = 0.6
    line_buffer_ratio: float = 0.4

    # persistence / ops
    store_backend: str = "memory"
    database_url: str = "sqlite:///dots_and_boxes.db"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Self:
        """Build settings from environment variables, falling back to the defaults above."""
        environ = dict(os.environ) if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None:
                continue
            caster = type(f.default)
            overrides[f.name] = caster(raw)
        return cls(**overrides)
