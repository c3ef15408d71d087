"""Map a pointer position (canvas pixels) to the line the player meant to draw."""

import math
from typing import Iterable, Optional

from src.dots.grid import Grid, Line, Point, all_lines

# Fractions of the grid spacing. The spacing follows the canvas size, so pixel constants would not scale.
HIT_RATIO = 0.6
BUFFER_RATIO = 0.4


def distance_to_segment(point: Point, start: Point, end: Point) -> float:
    """Distance from the point to the closest point of the segment (not of the infinite line)."""
    dx = end.x - start.x
    dy = end.y - start.y
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return math.hypot(point.x - start.x, point.y - start.y)

    # projection of the point onto the segment, clamped to its ends
    t = ((point.x - start.x) * dx + (point.y - start.y) * dy) / length_sq
    t = max(0.0, min(1.0, t))
    closest = Point(start.x + t * dx, start.y + t * dy)
    return math.hypot(point.x - closest.x, point.y - closest.y)


def is_near_segment(point: Point, start: Point, end: Point, buffer: float) -> bool:
    """Coarse filter: is the point inside the segment's bounding box grown by `buffer` on every side?"""
    return (
        min(start.x, end.x) - buffer <= point.x <= max(start.x, end.x) + buffer
        and min(start.y, end.y) - buffer <= point.y <= max(start.y, end.y) + buffer
    )


def resolve_line(
    x: float,
    y: float,
    grid: Grid,
    drawn_lines: Iterable[Line],
    hit_ratio: float = HIT_RATIO,
    buffer_ratio: float = BUFFER_RATIO,
) -> Optional[Line]:
    """
    Closest undrawn line to (x, y), or None on a near miss.
    ----

    A candidate must pass the bounding-box filter and be strictly closer than hit_ratio * spacing.
    On equal distance the first candidate wins (horizontal lines before vertical ones, row-major).
    """
    drawn = set(drawn_lines)
    point = Point(x, y)
    threshold = grid.spacing * hit_ratio
    buffer = grid.spacing * buffer_ratio

    nearest: Optional[Line] = None
    min_distance = threshold
    for line in all_lines(grid.size):
        if line in drawn:
            continue
        start, end = grid.endpoints(line)
        if not is_near_segment(point, start, end, buffer):
            continue
        distance = distance_to_segment(point, start, end)
        if distance < min_distance:
            min_distance = distance
            nearest = line
    return nearest
