"""
Geometry of the board: dots, lines between neighbouring dots and the boxes they enclose.

Everything here is pure. The Game only needs line keys and box adjacency,
the pixel coordinates are used by the input resolver (and by whatever renders the board).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator

from src.core.exceptions import InvalidLineKeyError
from src.core.shared_types import Orientation

# Pixel layout used when no canvas size is known: dots 40px apart with a 50px margin
DEFAULT_SPACING = 40.0
DEFAULT_OFFSET = 50.0

LINE_KEY_PATTERN = re.compile(r"^(horizontal|vertical)-(\d+)-(\d+)$")


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True, order=True)
class Line:
    """Line starting at dot (row, col), going right (horizontal) or down (vertical)."""

    orientation: Orientation
    row: int
    col: int

    @classmethod
    def horizontal(cls, row: int, col: int) -> Line:
        return cls(Orientation.HORIZONTAL, row, col)

    @classmethod
    def vertical(cls, row: int, col: int) -> Line:
        return cls(Orientation.VERTICAL, row, col)

    @classmethod
    def from_key(cls, key: str) -> Line:
        """'horizontal-0-1' --> Line(HORIZONTAL, 0, 1)"""
        match = LINE_KEY_PATTERN.match(key)
        if match is None:
            raise InvalidLineKeyError(f"Cannot interpret {key!r} as a line key.")
        orientation, row, col = match.groups()
        return cls(Orientation(orientation), int(row), int(col))

    @property
    def key(self) -> str:
        return f"{self.orientation.value}-{self.row}-{self.col}"

    def is_within_bounds(self, grid_size: int) -> bool:
        if self.orientation == Orientation.HORIZONTAL:
            return 0 <= self.row < grid_size and 0 <= self.col < grid_size - 1
        return 0 <= self.row < grid_size - 1 and 0 <= self.col < grid_size

    def adjacent_boxes(self, grid_size: int) -> list[Box]:
        """Boxes on either side of the line: one for a line on the border, two for an interior line."""
        if self.orientation == Orientation.HORIZONTAL:
            candidates = [Box(self.row - 1, self.col), Box(self.row, self.col)]
        else:
            candidates = [Box(self.row, self.col - 1), Box(self.row, self.col)]
        return [box for box in candidates if box.is_within_bounds(grid_size)]


@dataclass(frozen=True, order=True)
class Box:
    row: int
    col: int

    def is_within_bounds(self, grid_size: int) -> bool:
        return 0 <= self.row < grid_size - 1 and 0 <= self.col < grid_size - 1

    def bounding_lines(self) -> tuple[Line, Line, Line, Line]:
        """top, bottom, left, right"""
        return (
            Line.horizontal(self.row, self.col),
            Line.horizontal(self.row + 1, self.col),
            Line.vertical(self.row, self.col),
            Line.vertical(self.row, self.col + 1),
        )

    def is_complete(self, drawn: set[Line] | frozenset[Line]) -> bool:
        return all(line in drawn for line in self.bounding_lines())


def all_lines(grid_size: int) -> Iterator[Line]:
    """All lines, horizontal first, row-major."""
    for row in range(grid_size):
        for col in range(grid_size - 1):
            yield Line.horizontal(row, col)
    for row in range(grid_size - 1):
        for col in range(grid_size):
            yield Line.vertical(row, col)


def all_boxes(grid_size: int) -> Iterator[Box]:
    for row in range(grid_size - 1):
        for col in range(grid_size - 1):
            yield Box(row, col)


def total_boxes(grid_size: int) -> int:
    return (grid_size - 1) ** 2


@dataclass(frozen=True)
class Grid:
    """Pixel layout of the N x N dots."""

    size: int
    spacing: float = DEFAULT_SPACING
    offset: float = DEFAULT_OFFSET

    @classmethod
    def fit(cls, size: int, canvas_size: float) -> Grid:
        """
        Spread the dots evenly over a square canvas, keeping the same margin/spacing proportions as the
        default layout (canvas = spacing * (N-1) + 2 * offset).
        """
        default_canvas = DEFAULT_SPACING * (size - 1) + 2 * DEFAULT_OFFSET
        scale = canvas_size / default_canvas
        return cls(size, spacing=DEFAULT_SPACING * scale, offset=DEFAULT_OFFSET * scale)

    @property
    def canvas_size(self) -> float:
        return self.spacing * (self.size - 1) + 2 * self.offset

    def dot(self, row: int, col: int) -> Point:
        return Point(self.offset + col * self.spacing, self.offset + row * self.spacing)

    def dots(self) -> list[list[Point]]:
        return [[self.dot(row, col) for col in range(self.size)] for row in range(self.size)]

    def endpoints(self, line: Line) -> tuple[Point, Point]:
        start = self.dot(line.row, line.col)
        if line.orientation == Orientation.HORIZONTAL:
            return start, self.dot(line.row, line.col + 1)
        return start, self.dot(line.row + 1, line.col)
