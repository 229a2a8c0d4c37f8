"""
Geometry helpers shared by the layout engines and importers.

All helpers operate on anything with ``x``, ``y``, ``width`` and ``height``
attributes (``LayoutNode``, ``ShapeRef``) and never reorder their input.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from diagram_import.models import Bounds, bounding_box


# ---------------------------------------------------------------------------
# Grid placement
# ---------------------------------------------------------------------------

@dataclass
class GridPlacement:
    """Result of ``layout_grid``: per-item offsets plus the overall grid size."""
    offsets: list[tuple[float, float]]
    width: float
    height: float
    columns: int
    rows: int


def layout_grid(
    sizes: Sequence[tuple[float, float]],
    columns: int = 3,
    spacing_x: float = 20,
    spacing_y: float = 20,
) -> GridPlacement:
    """Arrange boxes of the given sizes in a fixed-column grid.

    Column widths are the widest item in each column and row heights the
    tallest item in each row. Each item is centred in its cell. Offsets are
    relative to the grid's top-left corner, in input order.
    """
    count = len(sizes)
    if count == 0:
        return GridPlacement([], 0, 0, 0, 0)

    cols = max(1, min(count, columns))
    rows = math.ceil(count / cols)

    col_widths = [0.0] * cols
    row_heights = [0.0] * rows
    for i, (w, h) in enumerate(sizes):
        r, c = divmod(i, cols)
        col_widths[c] = max(col_widths[c], w)
        row_heights[r] = max(row_heights[r], h)

    col_x = [0.0] * cols
    for c in range(1, cols):
        col_x[c] = col_x[c - 1] + col_widths[c - 1] + spacing_x
    row_y = [0.0] * rows
    for r in range(1, rows):
        row_y[r] = row_y[r - 1] + row_heights[r - 1] + spacing_y

    offsets: list[tuple[float, float]] = []
    for i, (w, h) in enumerate(sizes):
        r, c = divmod(i, cols)
        offsets.append((
            col_x[c] + (col_widths[c] - w) / 2,
            row_y[r] + (row_heights[r] - h) / 2,
        ))

    width = sum(col_widths) + spacing_x * (cols - 1)
    height = sum(row_heights) + spacing_y * (rows - 1)
    return GridPlacement(offsets, width, height, cols, rows)


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

def row_key(y: float, tolerance: float) -> float:
    """Bucket a Y coordinate so values within float noise share a row."""
    return round(y / tolerance) * tolerance


def group_into_rows(items: Iterable, tolerance: float = 10) -> list[list]:
    """Group items into rows by Y proximity.

    Rows are returned top to bottom; items keep their input order within a
    row.
    """
    buckets: dict[float, list] = {}
    for item in items:
        buckets.setdefault(row_key(item.y, tolerance), []).append(item)
    return [buckets[key] for key in sorted(buckets)]


def center_rows_vertically(items: Iterable, tolerance: float = 10) -> None:
    """Centre every item on the tallest item of its row, in place."""
    for row in group_into_rows(items, tolerance):
        tallest = max(row, key=lambda item: item.height)
        center_y = tallest.y + tallest.height / 2
        for item in row:
            item.y = center_y - item.height / 2


# ---------------------------------------------------------------------------
# Translation / centring
# ---------------------------------------------------------------------------

def items_bounds(items: Iterable) -> Bounds | None:
    return bounding_box(Bounds(i.x, i.y, i.width, i.height) for i in items)


def translate(items: Iterable, dx: float, dy: float) -> None:
    """Shift every item by (dx, dy) in place."""
    if dx == 0 and dy == 0:
        return
    for item in items:
        item.x += dx
        item.y += dy


def center_on_point(items: Sequence, point: tuple[float, float]) -> None:
    """Move items so the centre of their bounding box lies on *point*."""
    box = items_bounds(items)
    if box is None:
        return
    translate(items, point[0] - box.cx, point[1] - box.cy)


def center_layout(items: Sequence) -> None:
    """Re-centre items around the origin."""
    center_on_point(items, (0.0, 0.0))
