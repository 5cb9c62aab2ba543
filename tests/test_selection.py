import unittest
from datetime import date

from teamslots.grid import CellPosition, GridLayout
from teamslots.models import AvailabilityRecord
from teamslots.selection import (
    CommitKind,
    SelectionState,
    SelectionTracker,
    SlotGrid,
    apply_commit,
)

LAYOUT = GridLayout(cell_width=10, cell_height=10, max_rows=8, max_columns=5)


def _centre(row: int, column: int) -> tuple[float, float]:
    return column * 10 + 5, row * 10 + 5


class TestSelectionTracker(unittest.TestCase):
    def setUp(self):
        self.available: set[CellPosition] = set()
        self.paths: list[list[CellPosition]] = []
        self.tracker = SelectionTracker(LAYOUT, lambda cell: cell in self.available, self.paths.append)

    def test_tap_flips_one_cell(self):
        self.tracker.press(*_centre(2, 1))
        commit = self.tracker.release()
        self.assertEqual(commit.kind, CommitKind.TAP)
        self.assertEqual(commit.cells, (CellPosition(row=2, column=1),))
        self.assertTrue(commit.target_available)
        self.assertEqual(self.tracker.state, SelectionState.IDLE)

    def test_tap_on_available_cell_clears_it(self):
        self.available.add(CellPosition(row=2, column=1))
        self.tracker.press(*_centre(2, 1))
        commit = self.tracker.release()
        self.assertFalse(commit.target_available)

    def test_move_within_start_cell_is_still_tap(self):
        self.tracker.press(1, 1)
        self.tracker.move(8, 8)
        commit = self.tracker.release()
        self.assertEqual(commit.kind, CommitKind.TAP)

    def test_drag_covers_rectangle(self):
        self.tracker.press(*_centre(1, 1))
        self.tracker.move(*_centre(2, 2))
        self.tracker.move(*_centre(3, 3))
        commit = self.tracker.release()
        self.assertEqual(commit.kind, CommitKind.DRAG)
        self.assertEqual(len(commit.cells), 9)
        self.assertTrue(commit.target_available)
        self.assertEqual(len(self.paths[-1]), 9)

    def test_drag_shrinks_back(self):
        self.tracker.press(*_centre(0, 0))
        self.tracker.move(*_centre(3, 3))
        self.tracker.move(*_centre(1, 0))
        commit = self.tracker.release()
        self.assertEqual(commit.cells, (CellPosition(row=0, column=0), CellPosition(row=1, column=0)))

    def test_drag_back_to_start_cell_is_drag(self):
        self.tracker.press(*_centre(0, 0))
        self.tracker.move(*_centre(1, 1))
        self.tracker.move(*_centre(0, 0))
        commit = self.tracker.release()
        self.assertEqual(commit.kind, CommitKind.DRAG)
        self.assertEqual(commit.cells, (CellPosition(row=0, column=0),))

    def test_drag_from_available_cell_clears(self):
        self.available.add(CellPosition(row=0, column=0))
        self.tracker.press(*_centre(0, 0))
        self.tracker.move(*_centre(0, 2))
        commit = self.tracker.release()
        self.assertFalse(commit.target_available)

    def test_drag_outside_grid_is_clamped(self):
        self.tracker.press(*_centre(6, 3))
        self.tracker.move(1_000, 1_000)
        commit = self.tracker.release()
        self.assertIn(CellPosition(row=7, column=4), commit.cells)
        self.assertEqual(len(commit.cells), 4)

    def test_second_pointer_is_ignored(self):
        self.tracker.press(*_centre(0, 0), pointer_id=1)
        self.tracker.press(*_centre(4, 4), pointer_id=2)
        self.assertIsNone(self.tracker.move(*_centre(4, 4), pointer_id=2))
        self.assertIsNone(self.tracker.release(pointer_id=2))
        self.assertEqual(self.tracker.start, CellPosition(row=0, column=0))
        self.tracker.move(*_centre(0, 1), pointer_id=1)
        commit = self.tracker.release(pointer_id=1)
        self.assertEqual(len(commit.cells), 2)

    def test_cancel_commits_last_path(self):
        self.tracker.press(*_centre(0, 0))
        self.tracker.move(*_centre(1, 1))
        commit = self.tracker.cancel()
        self.assertTrue(commit.cancelled)
        self.assertEqual(commit.kind, CommitKind.DRAG)
        self.assertEqual(len(commit.cells), 4)
        self.assertIsNone(self.tracker.cancel())

    def test_release_without_press(self):
        self.assertIsNone(self.tracker.release())
        self.assertIsNone(self.tracker.move(1, 1))


class TestApplyCommit(unittest.TestCase):
    def test_drag_writes_record_once(self):
        days = [date(2024, 1, d) for d in range(1, 6)]
        grid = SlotGrid(days, list(range(9, 17)))
        record = AvailabilityRecord(scope_id="team-1", owner_id="alice", period="2024-01")
        tracker = SelectionTracker(grid.layout(10, 10), grid.lookup(record))

        tracker.press(*_centre(0, 0))
        tracker.move(*_centre(1, 1))
        written = apply_commit(record, tracker.release(), grid)

        self.assertEqual(
            sorted(str(k) for k in written),
            ["2024-01-01-10", "2024-01-01-9", "2024-01-02-10", "2024-01-02-9"],
        )
        self.assertTrue(record.is_available("2024-01-02", 10))

        # the same drag again now clears the rectangle
        tracker.press(*_centre(0, 0))
        tracker.move(*_centre(1, 1))
        apply_commit(record, tracker.release(), grid)
        self.assertEqual(record.total_available_hours(), 0)

    def test_slot_for_out_of_range(self):
        grid = SlotGrid([date(2024, 1, 1)], [9])
        self.assertIsNone(grid.slot_for(CellPosition(row=1, column=0)))
        self.assertEqual(str(grid.slot_for(CellPosition(row=0, column=0))), "2024-01-01-9")
