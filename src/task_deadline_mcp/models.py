"""Task and reminder models with deadline time-math.

Every time-based method takes an explicit ``now`` so callers can inject a
clock; omitting it uses the current UTC time. None of them raise: a task
without a deadline simply reports ``None``/``False``/``0``.
"""

from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any, List, Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

# ---------------------------------------------------------------------------
# Types

TaskStatus = Literal["pending", "in-progress", "completed"]
Priority = Literal["low", "medium", "high"]
TimeUnit = Literal["minute", "hour", "day", "week"]
Severity = Literal["overdue", "critical", "urgent", "soon", "normal"]

SUPPORTED_UNITS: tuple[str, ...] = ("minute", "hour", "day", "week")

CRITICAL_HOURS = 2
URGENT_HOURS = 24
SOON_HOURS = 72

_DAY_SECONDS = 24 * 60 * 60


class ReminderConfigError(ValueError):
    """Reminder settings contain an unsupported unit or malformed interval."""


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Coerce ``value`` into an aware UTC datetime, or ``None`` if impossible."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_number(value: int | float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def pluralize(value: int | float, unit: str) -> str:
    return f"{format_number(value)} {unit}{'' if value == 1 else 's'}"


# ---------------------------------------------------------------------------
# Reminder configuration


class ReminderInterval(BaseModel):
    value: float = Field(gt=0, description="How many units before the deadline; may be fractional")
    unit: TimeUnit = Field(description="One of minute, hour, day, week")
    enabled: bool = Field(True, description="Whether this interval fires")

    def describe(self) -> str:
        return pluralize(self.value, self.unit)


def _default_intervals() -> List[ReminderInterval]:
    return [
        ReminderInterval(value=1, unit="day", enabled=True),
        ReminderInterval(value=2, unit="hour", enabled=True),
        ReminderInterval(value=15, unit="minute", enabled=False),
    ]


class ReminderSettings(BaseModel):
    enabled: bool = Field(True, description="Master switch for this task's reminders")
    intervals: List[ReminderInterval] = Field(default_factory=_default_intervals)


def validate_reminder_settings(raw: ReminderSettings | dict) -> ReminderSettings:
    """Validate settings at configuration time.

    Raises ReminderConfigError for unsupported units or malformed intervals.
    """
    if isinstance(raw, ReminderSettings):
        raw = raw.model_dump()
    try:
        return ReminderSettings.model_validate(raw)
    except ValidationError as exc:
        raise ReminderConfigError(f"Invalid reminder settings: {exc}") from exc


class ReminderRecord(BaseModel):
    key: str
    sent_at: datetime
    reminder_type: str = "deadline"


# ---------------------------------------------------------------------------
# Task


class TimeUntilDeadline(BaseModel):
    is_overdue: bool
    magnitude: timedelta


def _generate_id() -> str:
    return uuid.uuid4().hex


class Task(BaseModel):
    id: str = Field(default_factory=_generate_id)
    title: str = Field(min_length=1, max_length=200)
    description: str = Field("", max_length=1000)
    status: TaskStatus = "pending"
    priority: Priority = "medium"
    assignee: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    group_id: Optional[str] = None
    deadline: Optional[datetime] = None
    reminder_settings: ReminderSettings = Field(default_factory=ReminderSettings)
    reminders: List[ReminderRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("deadline", mode="before")
    @classmethod
    def _coerce_deadline(cls, value: Any) -> Optional[datetime]:
        parsed = parse_datetime(value)
        if parsed is None and value not in (None, ""):
            logger.warning("Ignoring invalid deadline", value=repr(value))
        return parsed

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _coerce_timestamps(cls, value: Any) -> Any:
        return parse_datetime(value) or value

    # -- status helpers

    def effective_deadline(self) -> Optional[datetime]:
        """Deadline as an aware datetime; anything unparseable counts as no deadline."""
        return parse_datetime(self.deadline)

    def has_deadline(self) -> bool:
        return self.effective_deadline() is not None

    def is_completed(self) -> bool:
        return self.status == "completed"

    def is_high_priority(self) -> bool:
        return self.priority == "high"

    def has_reminder_been_sent(self, key: str) -> bool:
        return any(record.key == key for record in self.reminders)

    # -- time-math

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        deadline = self.effective_deadline()
        if deadline is None:
            return False
        return deadline < resolve_now(now)

    def days_overdue(self, now: Optional[datetime] = None) -> int:
        """Whole days overdue, rounded up: one second late counts as one day."""
        deadline = self.effective_deadline()
        if deadline is None:
            return 0
        late_by = resolve_now(now) - deadline
        if late_by <= timedelta(0):
            return 0
        return math.ceil(late_by.total_seconds() / _DAY_SECONDS)

    def time_until_deadline(
        self, now: Optional[datetime] = None
    ) -> Optional[TimeUntilDeadline]:
        deadline = self.effective_deadline()
        if deadline is None:
            return None
        diff = deadline - resolve_now(now)
        if diff <= timedelta(0):
            return TimeUntilDeadline(is_overdue=True, magnitude=abs(diff))
        return TimeUntilDeadline(is_overdue=False, magnitude=diff)

    def severity(self, now: Optional[datetime] = None) -> Optional[Severity]:
        info = self.time_until_deadline(now)
        if info is None:
            return None
        if info.is_overdue:
            return "overdue"
        hours = info.magnitude.total_seconds() / 3600
        if hours <= CRITICAL_HOURS:
            return "critical"
        if hours <= URGENT_HOURS:
            return "urgent"
        if hours <= SOON_HOURS:
            return "soon"
        return "normal"

    def is_due_soon(
        self, now: Optional[datetime] = None, hours_threshold: float = 24
    ) -> bool:
        info = self.time_until_deadline(now)
        if info is None or info.is_overdue:
            return False
        return info.magnitude.total_seconds() / 3600 <= hours_threshold

    def formatted_time_until_deadline(
        self, now: Optional[datetime] = None
    ) -> Optional[str]:
        info = self.time_until_deadline(now)
        if info is None:
            return None
        prefix = "Overdue by " if info.is_overdue else ""
        total = int(info.magnitude.total_seconds())
        days, rest = divmod(total, _DAY_SECONDS)
        hours, rest = divmod(rest, 3600)
        minutes = rest // 60
        if days > 0:
            return prefix + pluralize(days, "day")
        if hours > 0:
            return prefix + pluralize(hours, "hour")
        return prefix + pluralize(minutes, "minute")

    def formatted_deadline(self) -> Optional[str]:
        deadline = self.effective_deadline()
        if deadline is None:
            return None
        return deadline.strftime("%Y-%m-%d %H:%M UTC")

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = resolve_now(now)


# ---------------------------------------------------------------------------
# Groups


class Group(BaseModel):
    """A named set of tasks with members and admins. The creator is always both."""

    id: str = Field(default_factory=_generate_id)
    name: str = Field(min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    color: str = Field("#3b82f6", pattern=r"^#[0-9a-fA-F]{6}$")
    created_by: Optional[str] = None
    members: List[str] = Field(default_factory=list)
    admins: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _coerce_timestamps(cls, value: Any) -> Any:
        return parse_datetime(value) or value

    def is_member(self, member_id: str) -> bool:
        return member_id in self.members

    def is_admin(self, member_id: str) -> bool:
        return member_id in self.admins


def resolve_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return utc_now()
    if now.tzinfo is None:
        return now.replace(tzinfo=UTC)
    return now
