"""Drag and tap selection over the availability grid.

SelectionTracker turns a press / move / release stream from the primary
pointer into a committed set of cells. Handlers run on the UI event path:
they are synchronous, never block and never raise.

A release that never left the start cell is a TAP and flips that one
cell. Anything else, including a drag that wandered back to its start
cell, is a DRAG: the whole rectangle is set to the opposite of
the state the start cell had when the press began, so repeating the same
drag is idempotent.
"""

import enum
from collections.abc import Callable, Sequence
from datetime import date

from pydantic import BaseModel, ConfigDict

from teamslots.grid import CellPosition, GridCoordinateMapper, GridLayout, cells_between
from teamslots.logging import get_logger
from teamslots.models import AvailabilityRecord
from teamslots.slots import SlotKey

log = get_logger(__name__)

PathListener = Callable[[list[CellPosition]], None]
CellStateLookup = Callable[[CellPosition], bool]


class SelectionState(enum.Enum):
    IDLE = "idle"
    DRAGGING = "dragging"


class CommitKind(enum.Enum):
    TAP = "tap"
    DRAG = "drag"


class SelectionCommit(BaseModel):
    """Finalized gesture: which cells, and the state they should end up in."""

    model_config = ConfigDict(frozen=True)

    kind: CommitKind
    cells: tuple[CellPosition, ...]
    target_available: bool
    cancelled: bool = False


class SelectionTracker:
    """Idle / Dragging state machine for one grid surface.

    Args:
        layout: Grid geometry used to map pointer coordinates.
        is_available: Returns the current state of a cell; read on press to
            decide the drag direction and the tap result.
        on_path: Called with the live rectangle on press and on every move
            that changes it, for highlight rendering.
    """

    def __init__(
        self,
        layout: GridLayout,
        is_available: CellStateLookup,
        on_path: PathListener | None = None,
    ) -> None:
        self.mapper = GridCoordinateMapper(layout)
        self._is_available = is_available
        self._on_path = on_path
        self.state = SelectionState.IDLE
        self._pointer_id: int | None = None
        self._start: CellPosition | None = None
        self._current: CellPosition | None = None
        self._start_available = False
        self._moved = False
        self._path: list[CellPosition] = []

    @property
    def path(self) -> list[CellPosition]:
        return list(self._path)

    @property
    def start(self) -> CellPosition | None:
        return self._start

    def set_layout(self, layout: GridLayout) -> None:
        """Swap the geometry, e.g. after a scroll, keeping any drag in progress."""
        self.mapper.layout = layout

    def press(self, x: float, y: float, pointer_id: int = 0) -> list[CellPosition]:
        """Begin a gesture. Ignored while another pointer is dragging."""
        if self.state is SelectionState.DRAGGING:
            log.debug("selection_press_ignored", pointer_id=pointer_id, active=self._pointer_id)
            return self.path

        cell = self.mapper.to_cell(x, y)
        self.state = SelectionState.DRAGGING
        self._pointer_id = pointer_id
        self._start = cell
        self._current = cell
        self._start_available = bool(self._is_available(cell))
        self._moved = False
        self._path = [cell]
        self._emit()
        return self.path

    def move(self, x: float, y: float, pointer_id: int = 0) -> list[CellPosition] | None:
        """Extend the rectangle to the cell under the pointer.

        Returns:
            The updated path, or None when the event is not from the active pointer.
        """
        if self.state is not SelectionState.DRAGGING or pointer_id != self._pointer_id:
            return None

        cell = self.mapper.to_cell(x, y)
        if cell == self._current:
            return self.path
        self._current = cell
        self._moved = True
        self._path = cells_between(self._start, cell)
        self._emit()
        return self.path

    def release(self, pointer_id: int = 0) -> SelectionCommit | None:
        if self.state is not SelectionState.DRAGGING or pointer_id != self._pointer_id:
            return None
        return self._finish(cancelled=False)

    def cancel(self, pointer_id: int | None = None) -> SelectionCommit | None:
        """Finish with the last known path, e.g. when the pointer leaves the surface.

        A partial drag is committed, never discarded.
        """
        if self.state is not SelectionState.DRAGGING:
            return None
        if pointer_id is not None and pointer_id != self._pointer_id:
            return None
        return self._finish(cancelled=True)

    def _finish(self, cancelled: bool) -> SelectionCommit:
        if not self._moved:
            commit = SelectionCommit(
                kind=CommitKind.TAP,
                cells=(self._start,),
                target_available=not self._start_available,
                cancelled=cancelled,
            )
        else:
            commit = SelectionCommit(
                kind=CommitKind.DRAG,
                cells=tuple(self._path),
                target_available=not self._start_available,
                cancelled=cancelled,
            )
        log.debug(
            "selection_committed",
            kind=commit.kind.value,
            cells=len(commit.cells),
            target=commit.target_available,
            cancelled=cancelled,
        )
        self._reset()
        return commit

    def _reset(self) -> None:
        self.state = SelectionState.IDLE
        self._pointer_id = None
        self._start = None
        self._current = None
        self._start_available = False
        self._moved = False
        self._path = []

    def _emit(self) -> None:
        if self._on_path is not None:
            self._on_path(self.path)


class SlotGrid:
    """Axis labels of the grid: columns are dates, rows are hours."""

    def __init__(self, dates: Sequence[date], hours: Sequence[int]) -> None:
        self.dates = list(dates)
        self.hours = list(hours)

    def layout(
        self,
        cell_width: float,
        cell_height: float,
        header_height: float = 0.0,
        scroll_offset: float = 0.0,
    ) -> GridLayout:
        return GridLayout(
            cell_width=cell_width,
            cell_height=cell_height,
            max_rows=len(self.hours),
            max_columns=len(self.dates),
            header_height=header_height,
            scroll_offset=scroll_offset,
        )

    def slot_for(self, cell: CellPosition) -> SlotKey | None:
        if not (0 <= cell.row < len(self.hours) and 0 <= cell.column < len(self.dates)):
            return None
        return SlotKey(self.dates[cell.column], self.hours[cell.row])

    def slots_for(self, cells: Sequence[CellPosition]) -> list[SlotKey]:
        slots = (self.slot_for(cell) for cell in cells)
        return [slot for slot in slots if slot is not None]

    def lookup(self, record: AvailabilityRecord) -> CellStateLookup:
        """Cell-state callback for a tracker editing ``record``."""

        def _is_available(cell: CellPosition) -> bool:
            slot = self.slot_for(cell)
            return slot is not None and record.has_slot(slot)

        return _is_available


def apply_commit(record: AvailabilityRecord, commit: SelectionCommit, grid: SlotGrid) -> list[SlotKey]:
    """Write a committed gesture into ``record`` with one ``updated_at`` bump.

    Returns:
        The slot keys that were written.

    Raises:
        ValidationError: If a cell maps to a slot outside the record's period.
    """
    slots = grid.slots_for(commit.cells)
    if slots:
        record.set_slots(slots, commit.target_available)
    return slots
