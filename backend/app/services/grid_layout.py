"""Automatic grid layout for sites without a custom diagram.

Coordinates are percentages of the diagram area (0-100 on both axes) with a
fixed 15% margin. A single column or a single row is centred on 50.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field

MARGIN = 15.0
CENTER = 50.0


@dataclass(frozen=True)
class GridPosition:
    index: int
    row: int
    col: int
    x: float
    y: float


@dataclass(frozen=True)
class GridLayout:
    columns: int
    rows: int
    positions: list[GridPosition] = field(default_factory=list)


def optimal_columns(count: int, aspect_ratio: float = 1.0) -> int:
    if count <= 0:
        return 1
    if count <= 4:
        return min(2, count)
    if count <= 9:
        return 3
    if count <= 16:
        return 4
    return max(1, int(round(math.sqrt(count * aspect_ratio))))


def _axis(index: int, cells: int) -> float:
    if cells <= 1:
        return CENTER
    span = 100.0 - 2 * MARGIN
    value = MARGIN + index * span / max(1, cells - 1)
    return max(MARGIN, min(100.0 - MARGIN, value))


def generate_grid(count: int, columns: int | None = None, aspect_ratio: float = 1.0) -> GridLayout:
    """Row-major positions for ``count`` sensors.

    ``columns`` overrides the automatic choice when positive.
    """
    if count <= 0:
        return GridLayout(columns=1, rows=0, positions=[])

    cols = columns if columns and columns > 0 else optimal_columns(count, aspect_ratio)
    rows = math.ceil(count / cols)

    positions = []
    for i in range(count):
        row, col = divmod(i, cols)
        positions.append(GridPosition(
            index=i,
            row=row,
            col=col,
            x=_axis(col, cols),
            y=_axis(row, rows),
        ))
    return GridLayout(columns=cols, rows=rows, positions=positions)
