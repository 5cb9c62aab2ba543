"""SlotKey value object: one UTC calendar date plus an hour index.

The canonical string form is ``YYYY-MM-DD-H`` with an unpadded hour
(``2024-01-15-9``). Records store slots under that string; everything that
needs the date or hour back goes through ``SlotKey.parse`` instead of
splitting strings ad hoc.
"""

import calendar
import re
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone
from functools import total_ordering

from teamslots.errors import ValidationError

HOURS_PER_DAY = 24

_SLOT_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})-(\d{1,2})$")
MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


@total_ordering
class SlotKey:
    """Immutable (date, hour) pair, ordered by date then hour."""

    __slots__ = ("_date", "_hour")

    def __init__(self, day: date, hour: int) -> None:
        if isinstance(day, datetime) or not isinstance(day, date):
            raise ValidationError(f"Slot date must be a date, got {day!r}", field="date")
        if isinstance(hour, bool) or not isinstance(hour, int):
            raise ValidationError(f"Slot hour must be an integer, got {hour!r}", field="hour")
        if not 0 <= hour < HOURS_PER_DAY:
            raise ValidationError(f"Slot hour must be between 0 and 23, got {hour}", field="hour")
        self._date = day
        self._hour = hour

    @property
    def date(self) -> date:
        return self._date

    @property
    def hour(self) -> int:
        return self._hour

    @classmethod
    def parse(cls, value: "str | SlotKey") -> "SlotKey":
        """Parse a canonical (or zero-padded hour) slot string.

        Raises:
            ValidationError: If the string is not ``YYYY-MM-DD-H``.
        """
        if isinstance(value, SlotKey):
            return value
        match = _SLOT_RE.match(value.strip()) if isinstance(value, str) else None
        if match is None:
            raise ValidationError(f"Invalid slot key {value!r}, expected YYYY-MM-DD-H", field="slots")
        year, month, day, hour = (int(part) for part in match.groups())
        try:
            parsed = date(year, month, day)
        except ValueError as e:
            raise ValidationError(f"Invalid slot date in {value!r}: {e}", field="slots") from e
        return cls(parsed, hour)

    @classmethod
    def of(cls, day: "date | str", hour: int) -> "SlotKey":
        """Build a key from a date or an ISO ``YYYY-MM-DD`` string."""
        if isinstance(day, str):
            try:
                day = date.fromisoformat(day)
            except ValueError as e:
                raise ValidationError(f"Invalid date {day!r}, expected YYYY-MM-DD", field="date") from e
        return cls(day, hour)

    @classmethod
    def from_datetime(cls, moment: datetime) -> "SlotKey":
        """Key of the UTC hour containing ``moment`` (naive values are taken as UTC)."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        moment = moment.astimezone(timezone.utc)
        return cls(moment.date(), moment.hour)

    def to_datetime(self) -> datetime:
        """Start of the slot as an aware UTC datetime."""
        return datetime(
            self._date.year, self._date.month, self._date.day, self._hour, tzinfo=timezone.utc
        )

    @property
    def month(self) -> str:
        return f"{self._date.year:04d}-{self._date.month:02d}"

    def __str__(self) -> str:
        return f"{self._date.isoformat()}-{self._hour}"

    def __repr__(self) -> str:
        return f"SlotKey({str(self)!r})"

    def __hash__(self) -> int:
        return hash((self._date, self._hour))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SlotKey):
            return NotImplemented
        return (self._date, self._hour) == (other._date, other._hour)

    def __lt__(self, other: "SlotKey") -> bool:
        if not isinstance(other, SlotKey):
            return NotImplemented
        return (self._date, self._hour) < (other._date, other._hour)


def canonical_slot(value: "str | SlotKey") -> str:
    """Canonical string for a slot key, e.g. ``2024-01-05-09`` -> ``2024-01-05-9``."""
    return str(SlotKey.parse(value))


def slot_sort_key(value: "str | SlotKey") -> tuple[date, int]:
    key = SlotKey.parse(value)
    return key.date, key.hour


def parse_month(period: str) -> tuple[int, int]:
    """Split a ``YYYY-MM`` period into (year, month).

    Raises:
        ValidationError: If the period is malformed or the month is out of range.
    """
    match = MONTH_RE.match(period or "")
    if match is None:
        raise ValidationError("Period must be in YYYY-MM format", field="period")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValidationError("Period must be in YYYY-MM format", field="period")
    return year, month


def month_dates(period: str) -> list[date]:
    """Every calendar date of a ``YYYY-MM`` month."""
    year, month = parse_month(period)
    first = date(year, month, 1)
    days = calendar.monthrange(year, month)[1]
    return [first + timedelta(days=offset) for offset in range(days)]


def slot_universe(dates: Iterable[date], hours: Iterable[int] = range(HOURS_PER_DAY)) -> list[SlotKey]:
    """All slots of the given dates and hours, sorted and de-duplicated."""
    hour_list = sorted(set(hours))
    return sorted({SlotKey(day, hour) for day in dates for hour in hour_list})


def month_universe(period: str, hours: Iterable[int] = range(HOURS_PER_DAY)) -> list[SlotKey]:
    return slot_universe(month_dates(period), hours)


def date_range(start: date, end: date) -> list[date]:
    """Inclusive list of dates from ``start`` to ``end`` (empty when end < start)."""
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]
