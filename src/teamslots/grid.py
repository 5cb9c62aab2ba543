"""Pixel <-> cell mapping for the availability grid.

Pure functions, no state. Nothing in here raises on bad geometry: input
outside the grid saturates to the nearest edge cell, and degenerate layouts
(zero-sized cells, empty grids, NaN coordinates) are clamped to something
usable so a stray pointer event can never break the interaction loop.
"""

import math
from typing import Literal

from pydantic import BaseModel, ConfigDict

Direction = Literal["horizontal", "vertical", "diagonal", "none"]

# Smallest cell edge the mapper divides by
_MIN_CELL_SIZE = 1.0


class CellPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    row: int
    column: int


class Point(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float
    y: float


class GridLayout(BaseModel):
    """Geometry of the rendered grid.

    ``header_height`` is the band above row 0 (date labels); ``scroll_offset``
    is how far the grid body has scrolled vertically.
    """

    model_config = ConfigDict(frozen=True)

    cell_width: float
    cell_height: float
    max_rows: int
    max_columns: int
    header_height: float = 0.0
    scroll_offset: float = 0.0

    @property
    def safe_cell_width(self) -> float:
        return _finite(self.cell_width, _MIN_CELL_SIZE, minimum=_MIN_CELL_SIZE)

    @property
    def safe_cell_height(self) -> float:
        return _finite(self.cell_height, _MIN_CELL_SIZE, minimum=_MIN_CELL_SIZE)

    @property
    def row_count(self) -> int:
        return max(1, self.max_rows)

    @property
    def column_count(self) -> int:
        return max(1, self.max_columns)

    def scrolled(self, scroll_offset: float) -> "GridLayout":
        return self.model_copy(update={"scroll_offset": scroll_offset})


class VisibleRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_row: int
    end_row: int
    start_column: int
    end_column: int


def _finite(value: float, fallback: float, minimum: float | None = None) -> float:
    if value is None or math.isnan(value):
        return fallback
    if minimum is not None and value < minimum:
        return minimum
    return value


def _clamp(value: int, upper: int) -> int:
    return max(0, min(value, upper - 1))


def _floor_index(offset: float, size: float) -> int:
    ratio = offset / size
    if math.isnan(ratio):
        return 0
    if math.isinf(ratio):
        return -1 if ratio < 0 else 2**31
    return math.floor(ratio)


def to_cell(x: float, y: float, layout: GridLayout) -> CellPosition:
    """Map a pointer position to the cell under it, saturating at the edges."""
    header = _finite(layout.header_height, 0.0)
    scroll = _finite(layout.scroll_offset, 0.0)
    adjusted_y = _finite(y, 0.0) - header + scroll
    column = _floor_index(_finite(x, 0.0), layout.safe_cell_width)
    row = _floor_index(adjusted_y, layout.safe_cell_height)
    return CellPosition(
        row=_clamp(row, layout.row_count),
        column=_clamp(column, layout.column_count),
    )


def to_coordinate(position: CellPosition, layout: GridLayout) -> Point:
    """Pixel centre of a cell, in the same frame ``to_cell`` reads from."""
    cell = clamp_cell(position, layout)
    width = layout.safe_cell_width
    height = layout.safe_cell_height
    header = _finite(layout.header_height, 0.0)
    scroll = _finite(layout.scroll_offset, 0.0)
    return Point(
        x=cell.column * width + width / 2,
        y=cell.row * height + height / 2 + header - scroll,
    )


def cells_between(start: CellPosition, end: CellPosition) -> list[CellPosition]:
    """Every cell of the rectangle spanned by two corners, inclusive, row-major."""
    top, bottom = sorted((start.row, end.row))
    left, right = sorted((start.column, end.column))
    return [
        CellPosition(row=row, column=column)
        for row in range(top, bottom + 1)
        for column in range(left, right + 1)
    ]


def is_within_bounds(position: CellPosition, layout: GridLayout) -> bool:
    return 0 <= position.row < layout.row_count and 0 <= position.column < layout.column_count


def clamp_cell(position: CellPosition, layout: GridLayout) -> CellPosition:
    if is_within_bounds(position, layout):
        return position
    return CellPosition(
        row=_clamp(position.row, layout.row_count),
        column=_clamp(position.column, layout.column_count),
    )


def snap_to_grid(x: float, y: float, layout: GridLayout) -> Point:
    return to_coordinate(to_cell(x, y, layout), layout)


def selection_direction(start: CellPosition, current: CellPosition) -> Direction:
    delta_rows = abs(current.row - start.row)
    delta_columns = abs(current.column - start.column)
    if delta_rows == 0 and delta_columns == 0:
        return "none"
    if delta_rows == 0:
        return "horizontal"
    if delta_columns == 0:
        return "vertical"
    return "diagonal"


def visible_cells(
    layout: GridLayout,
    viewport_width: float,
    viewport_height: float,
    horizontal_offset: float = 0.0,
) -> VisibleRange:
    """Range of cells intersecting the viewport, used to limit rendering work."""
    width = layout.safe_cell_width
    height = layout.safe_cell_height
    scroll = _finite(layout.scroll_offset, 0.0)
    h_offset = _finite(horizontal_offset, 0.0)
    view_w = max(0.0, _finite(viewport_width, 0.0))
    view_h = max(0.0, _finite(viewport_height, 0.0))
    return VisibleRange(
        start_row=_clamp(_floor_index(scroll, height), layout.row_count),
        end_row=_clamp(-_floor_index(-(scroll + view_h), height), layout.row_count),
        start_column=_clamp(_floor_index(h_offset, width), layout.column_count),
        end_column=_clamp(-_floor_index(-(h_offset + view_w), width), layout.column_count),
    )


class GridCoordinateMapper:
    """Binds the mapping functions to one layout."""

    def __init__(self, layout: GridLayout) -> None:
        self.layout = layout

    def to_cell(self, x: float, y: float) -> CellPosition:
        return to_cell(x, y, self.layout)

    def to_coordinate(self, position: CellPosition) -> Point:
        return to_coordinate(position, self.layout)

    def cells_between(self, start: CellPosition, end: CellPosition) -> list[CellPosition]:
        return cells_between(clamp_cell(start, self.layout), clamp_cell(end, self.layout))

    def is_valid(self, position: CellPosition) -> bool:
        return is_within_bounds(position, self.layout)

    def set_scroll_offset(self, scroll_offset: float) -> None:
        self.layout = self.layout.scrolled(scroll_offset)
