"""Pydantic models for availability, teams and aggregation results.

All persisted models serialize to camelCase JSON through ``to_json`` and are
rebuilt with ``from_json``; the same shape is stored under the LocalStore
keys and in the remote document collections.

Validators raise ``teamslots.errors.ValidationError`` with a message naming
the offending field, e.g. "Team name is required".
"""

import re
import secrets
import string
import uuid
from collections.abc import Iterable
from datetime import date, datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from teamslots.errors import ConflictError, NotFoundError, ValidationError
from teamslots.slots import SlotKey, parse_month, slot_sort_key

PeriodKind = Literal["month", "event"]
MemberRole = Literal["member", "admin"]

TEAM_NAME_MAX_LENGTH = 50
MEMBER_NAME_MAX_LENGTH = 100
DEFAULT_MAX_MEMBERS = 50
TEAM_CODE_LENGTH = 8

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_RECORD_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "teamslots:availability")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _require_text(value: Any, label: str, field: str) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{label} is required", field=field)
    return value.strip() if isinstance(value, str) else value


def record_id_for(scope_id: str, owner_id: str, period: str) -> str:
    """Deterministic record id: one record per (scope, owner, period)."""
    return str(uuid.uuid5(_RECORD_NAMESPACE, "\x1f".join((scope_id, owner_id, period))))


class _JsonModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @model_validator(mode="wrap")
    @classmethod
    def _as_domain_error(cls, data: Any, handler: Any) -> Any:
        """Re-raise pydantic type errors as ``teamslots.errors.ValidationError``."""
        try:
            return handler(data)
        except PydanticValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            field = ".".join(str(part) for part in first.get("loc", ())) or None
            message = first.get("msg", str(e))
            raise ValidationError(
                f"Invalid {cls.__name__}: {field}: {message}" if field else f"Invalid {cls.__name__}: {message}",
                field=field,
            ) from e

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json(cls, data: dict[str, Any]):
        return cls.model_validate(data)


class AvailabilityRecord(_JsonModel):
    """One owner's availability for one period of one scope.

    ``slots`` is sparse: an absent key means unavailable. Both ``True`` and
    explicit ``False`` entries are kept so a user who unticks a slot still
    shows up as having answered it.
    """

    record_id: str = ""
    scope_id: str = Field(default="", validate_default=True)
    owner_id: str = Field(default="", validate_default=True)
    period: str = Field(default="", validate_default=True)
    period_kind: PeriodKind = "month"
    slots: dict[str, bool] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("scope_id", mode="before")
    @classmethod
    def _check_scope(cls, value: Any) -> Any:
        return _require_text(value, "Scope ID", "scope_id")

    @field_validator("owner_id", mode="before")
    @classmethod
    def _check_owner(cls, value: Any) -> Any:
        return _require_text(value, "Owner ID", "owner_id")

    @field_validator("period", mode="before")
    @classmethod
    def _check_period(cls, value: Any) -> Any:
        return _require_text(value, "Period", "period")

    @field_validator("created_at", "updated_at")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_identity(self) -> "AvailabilityRecord":
        if self.period_kind == "month":
            parse_month(self.period)

        canonical: dict[str, bool] = {}
        for raw_key, available in self.slots.items():
            key = SlotKey.parse(raw_key)
            self._check_in_period(key)
            canonical[str(key)] = bool(available)
        self.slots = canonical

        expected = record_id_for(self.scope_id, self.owner_id, self.period)
        if self.record_id and self.record_id != expected:
            raise ValidationError(
                f"Record ID {self.record_id!r} does not match scope, owner and period",
                field="record_id",
            )
        self.record_id = expected
        if self.updated_at < self.created_at:
            self.updated_at = self.created_at
        return self

    def _check_in_period(self, key: SlotKey) -> None:
        if self.period_kind == "month" and key.month != self.period:
            raise ValidationError(
                f"Slot {key} is outside period {self.period}", field="slots"
            )

    def _touch(self) -> None:
        self.updated_at = max(utc_now(), self.updated_at)

    def apply_server_timestamp(self, server_time: datetime) -> None:
        """Adopt the server-assigned write time without moving backwards."""
        self.updated_at = max(_as_utc(server_time), self.updated_at)

    @property
    def key(self) -> str:
        return self.record_id

    def set_slot(self, day: date | str, hour: int, available: bool) -> None:
        key = SlotKey.of(day, hour)
        self._check_in_period(key)
        self.slots[str(key)] = bool(available)
        self._touch()

    def set_range(self, day: date | str, hours: Iterable[int], available: bool) -> None:
        """Set several hours of one date with a single ``updated_at`` bump."""
        keys = [SlotKey.of(day, hour) for hour in hours]
        self.set_slots(keys, available)

    def set_slots(self, keys: Iterable[SlotKey | str], available: bool) -> None:
        """Set any slots, across dates, with a single ``updated_at`` bump.

        All keys are validated before any is written.
        """
        parsed = [SlotKey.parse(key) for key in keys]
        for key in parsed:
            self._check_in_period(key)
        for key in parsed:
            self.slots[str(key)] = bool(available)
        self._touch()

    def toggle_slot(self, day: date | str, hour: int) -> bool:
        new_state = not self.is_available(day, hour)
        self.set_slot(day, hour, new_state)
        return new_state

    def is_available(self, day: date | str, hour: int) -> bool:
        return self.slots.get(str(SlotKey.of(day, hour)), False)

    def has_slot(self, key: SlotKey | str) -> bool:
        return self.slots.get(str(SlotKey.parse(key)), False)

    def available_slots(self) -> list[SlotKey]:
        return sorted(SlotKey.parse(key) for key, value in self.slots.items() if value)

    def get_available_dates(self) -> list[date]:
        """Sorted distinct dates having at least one available slot."""
        return sorted({SlotKey.parse(key).date for key, value in self.slots.items() if value})

    def get_day_availability(self, day: date | str) -> dict[int, bool]:
        target = SlotKey.of(day, 0).date
        result: dict[int, bool] = {}
        for raw_key in sorted(self.slots, key=slot_sort_key):
            key = SlotKey.parse(raw_key)
            if key.date == target:
                result[key.hour] = self.slots[raw_key]
        return result

    def total_available_hours(self) -> int:
        return sum(1 for value in self.slots.values() if value)

    def clear_day(self, day: date | str) -> None:
        target = SlotKey.of(day, 0).date
        self.slots = {
            key: value for key, value in self.slots.items() if SlotKey.parse(key).date != target
        }
        self._touch()

    def clear(self) -> None:
        """Reset the period: remove every slot, keep the record."""
        self.slots = {}
        self._touch()

    def snapshot(self) -> "AvailabilityRecord":
        return self.model_copy(deep=True)


class TeamMember(_JsonModel):
    id: str = Field(default_factory=lambda: f"member-{uuid.uuid4().hex[:12]}")
    name: str = Field(default="", validate_default=True)
    email: str = Field(default="", validate_default=True)
    role: MemberRole = "member"
    joined_at: datetime = Field(default_factory=utc_now)
    last_active: datetime | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _check_name(cls, value: Any) -> Any:
        value = _require_text(value, "Member name", "name")
        if isinstance(value, str) and len(value) > MEMBER_NAME_MAX_LENGTH:
            raise ValidationError(
                f"Member name must be {MEMBER_NAME_MAX_LENGTH} characters or less", field="name"
            )
        return value

    @field_validator("email", mode="before")
    @classmethod
    def _check_email(cls, value: Any) -> Any:
        value = _require_text(value, "Member email", "email")
        if isinstance(value, str):
            if not _EMAIL_RE.match(value):
                raise ValidationError("Invalid email format", field="email")
            value = value.lower()
        return value

    @property
    def initials(self) -> str:
        return "".join(part[0].upper() for part in self.name.split() if part)[:2]

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _team_name(value: Any) -> Any:
    value = _require_text(value, "Team name", "name")
    if isinstance(value, str) and len(value) > TEAM_NAME_MAX_LENGTH:
        raise ValidationError(
            f"Team name must be {TEAM_NAME_MAX_LENGTH} characters or less", field="name"
        )
    return value


def _generate_team_code() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(TEAM_CODE_LENGTH))


class Team(_JsonModel):
    """A scheduling scope: a named group of members sharing availability."""

    id: str = Field(default_factory=lambda: f"team-{uuid.uuid4().hex[:12]}")
    name: str = Field(default="", validate_default=True)
    description: str = ""
    members: list[TeamMember] = Field(default_factory=list)
    code: str = Field(default_factory=_generate_team_code)
    max_members: int = Field(default=DEFAULT_MAX_MEMBERS, ge=1)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("name", mode="before")
    @classmethod
    def _check_name(cls, value: Any) -> Any:
        return _team_name(value)

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return value.strip().upper()

    def _touch(self) -> None:
        self.updated_at = max(utc_now(), self.updated_at)

    @property
    def member_ids(self) -> list[str]:
        return [member.id for member in self.members]

    @property
    def admins(self) -> list[TeamMember]:
        return [member for member in self.members if member.is_admin]

    def get_member(self, member_id: str) -> TeamMember | None:
        return next((m for m in self.members if m.id == member_id), None)

    def is_admin(self, member_id: str) -> bool:
        member = self.get_member(member_id)
        return member is not None and member.is_admin

    def add_member(self, member: TeamMember) -> None:
        """Add a member.

        Raises:
            ConflictError: If the team is full or the member id/email is taken.
        """
        if len(self.members) >= self.max_members:
            raise ConflictError("Team has reached maximum member limit")
        if any(m.id == member.id or m.email == member.email for m in self.members):
            raise ConflictError("Member already exists in team")
        self.members.append(member)
        self._touch()

    def remove_member(self, member_id: str) -> TeamMember:
        member = self.get_member(member_id)
        if member is None:
            raise NotFoundError(f"Member {member_id} is not in team {self.id}")
        self.members.remove(member)
        self._touch()
        return member

    def rename(self, name: str, description: str | None = None) -> None:
        self.name = _team_name(name)
        if description is not None:
            self.description = description
        self._touch()


class RankedSlot(_JsonModel):
    slot_key: str
    available_count: int
    available_user_ids: list[str]
    conflicting_user_ids: list[str]
    score: float


class AggregationResult(_JsonModel):
    """Derived view over the records of one scope/period. Never persisted."""

    scope_id: str | None = None
    period: str | None = None
    per_slot_count: dict[str, int] = Field(default_factory=dict)
    ranked_slots: list[RankedSlot] = Field(default_factory=list)
    total_participants: int = 0
    responded_count: int = 0

    @property
    def response_rate(self) -> float:
        if self.total_participants <= 0:
            return 0.0
        return self.responded_count / self.total_participants

    def most_popular(self, n: int = 5) -> list[RankedSlot]:
        return self.ranked_slots[:n]

    def least_popular(self, n: int = 5) -> list[RankedSlot]:
        if n <= 0:
            return []
        return self.ranked_slots[-n:]

    def best_slots(self, limit: int | None = None, min_score: float = 0.0) -> list[RankedSlot]:
        """Top slots scoring at least ``min_score`` with someone available."""
        picked = [
            slot
            for slot in self.ranked_slots
            if slot.available_count > 0 and slot.score >= min_score
        ]
        return picked if limit is None else picked[:limit]
