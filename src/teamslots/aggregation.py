"""Merge per-user availability into per-slot counts and a ranked slot list.

``aggregate`` is a pure function of its inputs: the same records and
universe always give the same ranking, independent of input order.

Ranking rule:
    score = available_count / responded_count   (0 when nobody responded)
    sorted by score descending, ties by slot date then hour ascending.

"Responded" means the owner has a record for the scope/period at all, even
one with no slots inside the universe, so a fully unavailable answer is
told apart from no answer.
"""

from collections.abc import Iterable, Sequence
from datetime import date

from pydantic import BaseModel

from teamslots.errors import ValidationError
from teamslots.logging import get_logger
from teamslots.models import AggregationResult, AvailabilityRecord, RankedSlot
from teamslots.slots import SlotKey

log = get_logger(__name__)


class DayHeat(BaseModel):
    """Per-date roll-up for calendar heatmaps."""

    date: date
    max_count: int
    total_count: int
    best_slot: str | None
    best_score: float


class ParticipationSummary(BaseModel):
    total_participants: int
    responded_count: int
    response_rate: float
    most_popular_slots: list[str]
    least_popular_slots: list[str]


def latest_per_owner(records: Iterable[AvailabilityRecord]) -> list[AvailabilityRecord]:
    """Collapse duplicates to one record per owner, keeping the newest ``updated_at``."""
    latest: dict[str, AvailabilityRecord] = {}
    for record in records:
        current = latest.get(record.owner_id)
        if current is None or record.updated_at > current.updated_at:
            latest[record.owner_id] = record
    return [latest[owner] for owner in sorted(latest)]


def _resolve_scope(
    records: Sequence[AvailabilityRecord], scope_id: str | None, period: str | None
) -> tuple[str | None, str | None]:
    if records:
        scope_id = scope_id if scope_id is not None else records[0].scope_id
        period = period if period is not None else records[0].period
    for record in records:
        if record.scope_id != scope_id or record.period != period:
            raise ValidationError(
                f"Record {record.record_id} belongs to {record.scope_id}/{record.period}, "
                f"not {scope_id}/{period}",
                field="records",
            )
    return scope_id, period


def aggregate(
    records: Iterable[AvailabilityRecord],
    universe: Iterable[SlotKey | str],
    *,
    scope_id: str | None = None,
    period: str | None = None,
    total_participants: int | None = None,
) -> AggregationResult:
    """Count and rank every slot of ``universe`` across ``records``.

    Args:
        records: Availability records of one scope and period.
        universe: Every slot the event spans; slots outside it are ignored.
        scope_id: Expected scope. Defaults to the first record's scope.
        period: Expected period. Defaults to the first record's period.
        total_participants: Size of the scope (team members). Defaults to,
            and never drops below, the number of respondents.

    Returns:
        AggregationResult with per-slot counts and the ranked slot list.

    Raises:
        ValidationError: If a record belongs to another scope or period, or a
            universe entry is not a valid slot key.
    """
    record_list = list(records)
    scope_id, period = _resolve_scope(record_list, scope_id, period)
    respondents = latest_per_owner(record_list)
    responded = len(respondents)
    slots = sorted({SlotKey.parse(key) for key in universe})

    per_slot_count: dict[str, int] = {}
    ranked: list[RankedSlot] = []
    for slot in slots:
        key = str(slot)
        available = [r.owner_id for r in respondents if r.slots.get(key) is True]
        conflicting = [r.owner_id for r in respondents if r.slots.get(key) is not True]
        per_slot_count[key] = len(available)
        ranked.append(
            RankedSlot(
                slot_key=key,
                available_count=len(available),
                available_user_ids=available,
                conflicting_user_ids=conflicting,
                score=len(available) / responded if responded else 0.0,
            )
        )

    # slots is already ascending, and sort() is stable, so ties keep slot order
    ranked.sort(key=lambda entry: entry.score, reverse=True)

    total = max(total_participants or 0, responded)
    log.debug(
        "aggregation_computed",
        scope_id=scope_id,
        period=period,
        slots=len(slots),
        responded=responded,
        total=total,
    )
    return AggregationResult(
        scope_id=scope_id,
        period=period,
        per_slot_count=per_slot_count,
        ranked_slots=ranked,
        total_participants=total,
        responded_count=responded,
    )


def daily_heatmap(result: AggregationResult) -> list[DayHeat]:
    """Roll the per-slot counts up to one entry per date, in date order."""
    by_day: dict[date, list[RankedSlot]] = {}
    for entry in result.ranked_slots:
        by_day.setdefault(SlotKey.parse(entry.slot_key).date, []).append(entry)

    heat: list[DayHeat] = []
    for day in sorted(by_day):
        entries = sorted(by_day[day], key=lambda e: (-e.score, SlotKey.parse(e.slot_key)))
        best = entries[0] if entries and entries[0].available_count > 0 else None
        heat.append(
            DayHeat(
                date=day,
                max_count=max(e.available_count for e in entries),
                total_count=sum(e.available_count for e in entries),
                best_slot=best.slot_key if best else None,
                best_score=best.score if best else 0.0,
            )
        )
    return heat


def participation_summary(result: AggregationResult, top: int = 5) -> ParticipationSummary:
    return ParticipationSummary(
        total_participants=result.total_participants,
        responded_count=result.responded_count,
        response_rate=result.response_rate,
        most_popular_slots=[s.slot_key for s in result.most_popular(top)],
        least_popular_slots=[s.slot_key for s in result.least_popular(top)],
    )
