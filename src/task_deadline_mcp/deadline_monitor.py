"""Background deadline monitor.

Polls the task store on a fixed cadence, asks the reminder scheduler which
reminder each task is due for, records it and hands a notification to the
notifier. Each ``(task_id, reminder_key)`` pair is dispatched at most once per
process: the in-memory key set is checked and updated under a lock before any
delivery work starts, so overlapping ticks cannot both pick up the same pair.

Reminders are recorded before they are delivered. A crash between the two
loses a notification rather than sending it twice.
"""

from __future__ import annotations

import threading
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Callable, Iterable, List, Optional, Protocol

from loguru import logger
from pydantic import BaseModel

from task_deadline_mcp.models import (
    ReminderRecord,
    ReminderSettings,
    Task,
    resolve_now,
    utc_now,
    validate_reminder_settings,
)
from task_deadline_mcp.notifications import (
    Notification,
    Notifier,
    build_deadline_notification,
    build_manual_notification,
)
from task_deadline_mcp.reminder_scheduler import (
    DueReminder,
    UpcomingReminder,
    evaluate,
    list_upcoming,
    mark_sent,
)
from task_deadline_mcp.settings import MIN_CHECK_INTERVAL_MS

DEFAULT_CHECK_INTERVAL_MS = 60_000

Clock = Callable[[], datetime]


class TaskSource(Protocol):
    def get_all_tasks(self) -> List[Task]: ...

    def get_task(self, task_id: str) -> Task: ...

    def persist_reminder_log(
        self,
        task_id: str,
        reminders: Iterable[ReminderRecord],
        updated_at: datetime,
    ) -> None: ...

    def update_reminder_settings(
        self, task_id: str, settings: ReminderSettings | dict
    ) -> Task: ...


@dataclass(frozen=True)
class PendingReminder:
    task: Task
    reminder: DueReminder


class DeadlineStatistics(BaseModel):
    total_tasks_with_deadlines: int
    overdue: int
    due_today: int
    due_tomorrow: int
    due_this_week: int
    reminders_sent: int
    average_reminders_per_task: float


def clamp_check_interval(milliseconds: int) -> int:
    if milliseconds < MIN_CHECK_INTERVAL_MS:
        logger.warning(
            "Check interval too short, using minimum",
            requested_ms=milliseconds,
            minimum_ms=MIN_CHECK_INTERVAL_MS,
        )
        return MIN_CHECK_INTERVAL_MS
    return int(milliseconds)


class DeadlineMonitor:
    def __init__(
        self,
        task_store: TaskSource,
        notifier: Notifier,
        *,
        clock: Clock = utc_now,
        check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS,
        executor: Optional[Executor] = None,
    ) -> None:
        self._task_store = task_store
        self._notifier = notifier
        self._clock = clock
        self._executor = executor
        self._check_interval_ms = clamp_check_interval(check_interval_ms)
        self._sent_keys: set[tuple[str, str]] = set()
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._thread is not None

    @property
    def check_interval_ms(self) -> int:
        return self._check_interval_ms

    def start(self) -> None:
        with self._state_lock:
            if self._thread is not None:
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._runner,
                args=(stop_event, self._check_interval_ms / 1000),
                name="deadline-monitor",
                daemon=True,
            )
            self._stop_event = stop_event
            self._thread = thread
            thread.start()
        logger.info(
            "Deadline reminder monitor started",
            check_interval_ms=self._check_interval_ms,
        )

    def stop(self) -> None:
        with self._state_lock:
            if self._thread is None or self._stop_event is None:
                return
            # In-flight ticks finish on their own; only future ticks are cancelled.
            self._stop_event.set()
            self._stop_event = None
            self._thread = None
        logger.info("Deadline reminder monitor stopped")

    def set_check_interval(self, milliseconds: int) -> None:
        self._check_interval_ms = clamp_check_interval(milliseconds)
        if self.is_running:
            self.stop()
            self.start()

    def close(self) -> None:
        self.stop()
        self.clear_sent_reminders()

    def clear_sent_reminders(self) -> None:
        with self._lock:
            self._sent_keys.clear()
        logger.info("Cleared sent reminders cache")

    def now(self) -> datetime:
        return resolve_now(self._clock())

    def _runner(self, stop_event: threading.Event, interval_seconds: float) -> None:
        while not stop_event.wait(interval_seconds):
            self.check_and_send_reminders()

    # Tick

    def check_and_send_reminders(self) -> List[Notification]:
        """Run one evaluation pass. Never raises."""
        try:
            now = self.now()
            try:
                tasks = self._task_store.get_all_tasks()
            except Exception:
                logger.exception("Failed to get tasks for reminder checking")
                return []
            batch = self._collect_due(tasks, now)
            if not batch:
                return []
            return self._process_pending_reminders(batch, now)
        except Exception:
            logger.exception("Error checking for reminders")
            return []

    def _collect_due(self, tasks: Iterable[Task], now: datetime) -> List[PendingReminder]:
        batch: List[PendingReminder] = []
        lagging: List[Task] = []
        for task in tasks:
            try:
                due = evaluate(task, now)
                while due is not None:
                    pair = (task.id, due.key)
                    with self._lock:
                        if pair not in self._sent_keys:
                            self._sent_keys.add(pair)
                            batch.append(PendingReminder(task=task, reminder=due))
                            break
                    # Already dispatched by this process but the stored log lags.
                    mark_sent(task, due.key, now)
                    due = evaluate(task, now)
                    if due is None:
                        lagging.append(task)
            except Exception:
                logger.exception("Failed to evaluate reminders", task_id=task.id)
        # Tasks in the batch carry their catch-up marks into the regular write.
        for task in lagging:
            self._persist_log(task)
        return batch

    def _persist_log(self, task: Task) -> None:
        try:
            self._task_store.persist_reminder_log(task.id, task.reminders, task.updated_at)
        except Exception:
            logger.exception("Failed to persist reminder log", task_id=task.id)

    def _process_pending_reminders(
        self, batch: Iterable[PendingReminder], now: datetime
    ) -> List[Notification]:
        sent: List[Notification] = []
        for item in batch:
            task, due = item.task, item.reminder
            try:
                mark_sent(task, due.key, now)
                self._persist_log(task)

                notification = build_deadline_notification(task, due, now)
                self._dispatch(notification)
                sent.append(notification)
                logger.info(
                    "Sent reminder",
                    task_id=task.id,
                    title=task.title,
                    reminder_key=due.key,
                )
            except Exception:
                logger.exception(
                    "Failed to process reminder", task_id=task.id, reminder_key=due.key
                )
        return sent

    def _dispatch(self, notification: Notification) -> None:
        if self._executor is None:
            self._dispatch_safely(notification)
            return
        try:
            self._executor.submit(self._dispatch_safely, notification)
        except RuntimeError:
            logger.exception(
                "Dispatch executor unavailable, delivering inline",
                notification_id=notification.id,
            )
            self._dispatch_safely(notification)

    def _dispatch_safely(self, notification: Notification) -> None:
        try:
            self._notifier.dispatch(notification)
        except Exception:
            logger.exception(
                "Notification dispatch failed",
                notification_id=notification.id,
                task_id=notification.task_id,
            )

    # Manual operations

    def send_manual_reminder(self, task_id: str, message: Optional[str] = None) -> Notification:
        task = self._task_store.get_task(task_id)
        if not task.has_deadline():
            raise ValueError("Task has no deadline set")
        notification = build_manual_notification(task, self.now(), message)
        self._dispatch(notification)
        logger.info("Sent manual reminder", task_id=task_id)
        return notification

    def update_reminder_settings(
        self, task_id: str, settings: ReminderSettings | dict
    ) -> Task:
        validated = validate_reminder_settings(settings)
        return self._task_store.update_reminder_settings(task_id, validated)

    # Queries

    def list_upcoming_reminders(self, task_id: str) -> List[UpcomingReminder]:
        task = self._task_store.get_task(task_id)
        return list_upcoming(task, self.now())

    def get_tasks_needing_reminders(self) -> List[PendingReminder]:
        now = self.now()
        pending: List[PendingReminder] = []
        for task in self._task_store.get_all_tasks():
            due = evaluate(task, now)
            if due is not None:
                pending.append(PendingReminder(task=task, reminder=due))
        return pending

    def get_overdue_tasks(self) -> List[Task]:
        now = self.now()
        overdue = [
            task
            for task in self._task_store.get_all_tasks()
            if task.is_overdue(now) and not task.is_completed()
        ]
        return sorted(overdue, key=_deadline_sort_key)

    def get_upcoming_deadlines(self, days: int = 7) -> List[Task]:
        now = self.now()
        return self._upcoming(self._task_store.get_all_tasks(), now, days)

    def get_tasks_due_today(self) -> List[Task]:
        """Unfinished tasks whose deadline falls on today's UTC date, passed or not."""
        now = self.now()
        today = now.date()
        due = [
            task
            for task in self._task_store.get_all_tasks()
            if not task.is_completed() and _count_due_on([task], today, now)
        ]
        return sorted(due, key=_deadline_sort_key)

    def get_deadline_statistics(self) -> DeadlineStatistics:
        now = self.now()
        tasks = self._task_store.get_all_tasks()
        with_deadlines = [task for task in tasks if task.has_deadline()]
        open_with_deadlines = [task for task in with_deadlines if not task.is_completed()]

        today = now.date()
        tomorrow = today + timedelta(days=1)
        reminders_sent = sum(len(task.reminders) for task in tasks)
        average = (
            round(reminders_sent / len(with_deadlines), 2) if with_deadlines else 0.0
        )

        return DeadlineStatistics(
            total_tasks_with_deadlines=len(with_deadlines),
            overdue=sum(1 for task in open_with_deadlines if task.is_overdue(now)),
            due_today=_count_due_on(open_with_deadlines, today, now),
            due_tomorrow=_count_due_on(open_with_deadlines, tomorrow, now),
            due_this_week=len(self._upcoming(tasks, now, 7)),
            reminders_sent=reminders_sent,
            average_reminders_per_task=average,
        )

    @staticmethod
    def _upcoming(tasks: Iterable[Task], now: datetime, days: int) -> List[Task]:
        cutoff = now + timedelta(days=days)
        upcoming = []
        for task in tasks:
            deadline = task.effective_deadline()
            if deadline is None or task.is_completed():
                continue
            if now <= deadline <= cutoff:
                upcoming.append(task)
        return sorted(upcoming, key=_deadline_sort_key)


def _deadline_sort_key(task: Task) -> datetime:
    return task.effective_deadline() or datetime.max.replace(tzinfo=UTC)


def _count_due_on(tasks: Iterable[Task], day: date, now: datetime) -> int:
    count = 0
    for task in tasks:
        deadline = task.effective_deadline()
        if deadline is not None and deadline.astimezone(now.tzinfo).date() == day:
            count += 1
    return count
