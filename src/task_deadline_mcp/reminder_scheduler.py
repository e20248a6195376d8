"""Per-task reminder evaluation.

Decides which configured reminder interval is due for a single task and keeps
the task's sent-log free of duplicates. Nothing here performs I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Literal, Optional

from loguru import logger

from task_deadline_mcp.models import (
    ReminderInterval,
    ReminderRecord,
    Task,
    format_number,
    resolve_now,
)

NotificationPriority = Literal["high", "medium", "low"]

_UNIT_DELTAS: dict[str, timedelta] = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
}


@dataclass(frozen=True)
class DueReminder:
    interval: ReminderInterval
    reminder_time: datetime
    key: str
    due: bool = True


@dataclass(frozen=True)
class UpcomingReminder:
    reminder_time: datetime
    key: str
    interval: ReminderInterval


def reminder_key(interval: ReminderInterval) -> str:
    return f"{format_number(interval.value)}_{interval.unit}"


def calculate_reminder_time(
    deadline: datetime, interval: ReminderInterval
) -> Optional[datetime]:
    """Return ``deadline`` minus the interval, or None for an unknown unit."""
    unit_delta = _UNIT_DELTAS.get(str(interval.unit))
    if unit_delta is None:
        return None
    return deadline - unit_delta * interval.value


def _active_deadline(task: Task) -> Optional[datetime]:
    """Deadline to evaluate against, or None when reminders cannot fire."""
    if not task.reminder_settings.enabled or task.is_completed():
        return None
    return task.effective_deadline()


def _enabled_intervals(task: Task, deadline: datetime):
    for interval in task.reminder_settings.intervals:
        if not interval.enabled:
            continue
        reminder_time = calculate_reminder_time(deadline, interval)
        if reminder_time is None:
            logger.warning(
                "Skipping reminder interval with unsupported unit",
                task_id=task.id,
                unit=str(interval.unit),
                value=interval.value,
            )
            continue
        yield interval, reminder_time, reminder_key(interval)


def evaluate(task: Task, now: Optional[datetime] = None) -> Optional[DueReminder]:
    """Return the first due, unsent reminder in configuration order.

    Only one reminder is reported per call; record it with ``mark_sent`` and
    call again to pick up the next one.
    """
    deadline = _active_deadline(task)
    if deadline is None:
        return None
    current = resolve_now(now)
    for interval, reminder_time, key in _enabled_intervals(task, deadline):
        if current >= reminder_time and not task.has_reminder_been_sent(key):
            return DueReminder(interval=interval, reminder_time=reminder_time, key=key)
    return None


def list_upcoming(task: Task, now: Optional[datetime] = None) -> List[UpcomingReminder]:
    """Unsent reminders still in the future, earliest first."""
    deadline = _active_deadline(task)
    if deadline is None:
        return []
    current = resolve_now(now)
    upcoming = [
        UpcomingReminder(reminder_time=reminder_time, key=key, interval=interval)
        for interval, reminder_time, key in _enabled_intervals(task, deadline)
        if reminder_time > current and not task.has_reminder_been_sent(key)
    ]
    upcoming.sort(key=lambda item: item.reminder_time)
    return upcoming


def mark_sent(task: Task, key: str, sent_at: Optional[datetime] = None) -> bool:
    """Record ``key`` as sent. Returns False if it was already recorded."""
    if task.has_reminder_been_sent(key):
        return False
    stamp = resolve_now(sent_at)
    task.reminders.append(ReminderRecord(key=key, sent_at=stamp))
    task.touch(stamp)
    return True


def notification_priority(task: Task, interval: ReminderInterval) -> NotificationPriority:
    if task.is_high_priority():
        return "high"
    if interval.unit == "minute" or (interval.unit == "hour" and interval.value <= 2):
        return "high"
    if interval.unit == "hour" and interval.value <= 24:
        return "medium"
    return "low"


def describe_upcoming(item: UpcomingReminder) -> dict[str, Any]:
    return {
        "key": item.key,
        "reminder_time": item.reminder_time.isoformat(),
        "interval": item.interval.describe(),
    }
