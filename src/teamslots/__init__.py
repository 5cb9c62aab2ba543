"""Group availability scheduling: grid selection, slot ranking and offline-first sync.

Participants mark UTC hour slots on a date x hour grid, their records are
aggregated into a ranked list of meeting times, and every read and write
keeps working offline through the SyncCoordinator.
"""

from teamslots.aggregation import aggregate, daily_heatmap, participation_summary
from teamslots.errors import (
    ConflictError,
    NetworkError,
    NotFoundError,
    PermanentError,
    TeamSlotsError,
    TransientError,
    ValidationError,
)
from teamslots.grid import CellPosition, GridCoordinateMapper, GridLayout, cells_between, to_cell, to_coordinate
from teamslots.models import AggregationResult, AvailabilityRecord, RankedSlot, Team, TeamMember
from teamslots.selection import SelectionCommit, SelectionTracker, SlotGrid, apply_commit
from teamslots.slots import SlotKey, month_universe, slot_universe
from teamslots.sync import SyncCoordinator
from teamslots.teams import TeamService

__all__ = [
    "AggregationResult",
    "AvailabilityRecord",
    "CellPosition",
    "ConflictError",
    "GridCoordinateMapper",
    "GridLayout",
    "NetworkError",
    "NotFoundError",
    "PermanentError",
    "RankedSlot",
    "SelectionCommit",
    "SelectionTracker",
    "SlotGrid",
    "SlotKey",
    "SyncCoordinator",
    "Team",
    "TeamMember",
    "TeamService",
    "TeamSlotsError",
    "TransientError",
    "ValidationError",
    "aggregate",
    "apply_commit",
    "cells_between",
    "daily_heatmap",
    "month_universe",
    "participation_summary",
    "slot_universe",
    "to_cell",
    "to_coordinate",
]
