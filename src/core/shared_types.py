"""
Type definitions used across layers
"""

from enum import StrEnum


class Status(StrEnum):
    WAITING = "waiting"
    PLAYING = "playing"
    FINISHED = "finished"


class Orientation(StrEnum):
    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"


class MessageType(StrEnum):
    CHAT = "chat"
    JOIN = "join"
    LEAVE = "leave"
    GAME = "game"


# Colors are handed out by turn order (index 0 gets the first color)
PLAYER_COLORS: tuple[str, ...] = ("#e74c3c", "#3498db", "#27ae60", "#2c3e50")
FALLBACK_COLOR = "#333333"


def player_color(index: int) -> str:
    if 0 <= index < len(PLAYER_COLORS):
        return PLAYER_COLORS[index]
    return FALLBACK_COLOR
