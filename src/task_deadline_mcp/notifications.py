"""Deadline notifications and the notifiers that deliver them."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Protocol

from loguru import logger
from pydantic import BaseModel, Field

from task_deadline_mcp.models import Task
from task_deadline_mcp.reminder_scheduler import DueReminder, notification_priority
from task_deadline_mcp.telegram_client import NotificationError, TelegramBotClient

NotificationType = Literal["deadline_reminder", "manual_reminder"]

PRIORITY_EMOJIS = {"high": "🚨", "medium": "⏰", "low": "📅"}
TASK_PRIORITY_EMOJIS = {"high": "🔥", "medium": "🟡", "low": "🟢"}

# Characters with meaning in Telegram legacy Markdown.
_MARKDOWN_SPECIAL = re.compile(r"([_*`\[])")


class Notification(BaseModel):
    id: str
    type: NotificationType = "deadline_reminder"
    title: str
    message: str
    task_id: str
    priority: Literal["high", "medium", "low"] = "medium"
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)


class Notifier(Protocol):
    """Delivers a notification. Implementations handle their own failures."""

    def dispatch(self, notification: Notification) -> None: ...


def build_deadline_notification(
    task: Task, due: DueReminder, now: datetime
) -> Notification:
    time_until = task.formatted_time_until_deadline(now)
    return Notification(
        id=f"reminder_{task.id}_{int(now.timestamp() * 1000)}",
        type="deadline_reminder",
        title="Task Deadline Reminder",
        message=f'"{task.title}" is due {time_until}',
        task_id=task.id,
        priority=notification_priority(task, due.interval),
        timestamp=now,
        data={
            "task_title": task.title,
            "task_id": task.id,
            "deadline_formatted": task.formatted_deadline(),
            "time_until_deadline": time_until,
            "reminder_interval": due.interval.describe(),
            "reminder_key": due.key,
            "task_priority": task.priority,
            "task_status": task.status,
        },
    )


def build_manual_notification(
    task: Task, now: datetime, message: Optional[str] = None
) -> Notification:
    time_until = task.formatted_time_until_deadline(now)
    return Notification(
        id=f"manual_reminder_{task.id}_{int(now.timestamp() * 1000)}",
        type="manual_reminder",
        title="Manual Reminder",
        message=message or f'Reminder: "{task.title}" is due {time_until}',
        task_id=task.id,
        priority="medium",
        timestamp=now,
        data={
            "task_title": task.title,
            "task_id": task.id,
            "deadline_formatted": task.formatted_deadline(),
            "time_until_deadline": time_until,
        },
    )


def escape_markdown(text: str) -> str:
    return _MARKDOWN_SPECIAL.sub(r"\\\1", text)


def format_reminder_message(notification: Notification) -> str:
    """Render a notification as a Telegram Markdown message."""
    data = notification.data
    icon = PRIORITY_EMOJIS.get(notification.priority, "🔔")
    title = escape_markdown(str(data.get("task_title", "")))
    lines = [f"{icon} *{notification.title}*", "", f"📋 *{title}*"]
    if data.get("deadline_formatted"):
        lines.append(f"📅 *Due:* {data['deadline_formatted']}")
    if data.get("time_until_deadline"):
        lines.append(f"⏳ *Time left:* {data['time_until_deadline']}")
    if data.get("task_priority"):
        emoji = TASK_PRIORITY_EMOJIS.get(data["task_priority"], "⚪")
        lines.append(f"{emoji} *Priority:* {str(data['task_priority']).upper()}")
    if notification.type == "manual_reminder":
        lines.extend(["", escape_markdown(notification.message)])
    else:
        lines.extend(["", "_Please update the status or extend the deadline_"])
    return "\n".join(lines)


class TelegramNotifier:
    """Sends notifications to one Telegram chat through the Bot API."""

    def __init__(
        self,
        client: TelegramBotClient,
        chat_id: str | int,
        *,
        parse_mode: Optional[str] = "Markdown",
    ) -> None:
        self._client = client
        self._chat_id = chat_id
        self._parse_mode = parse_mode

    def dispatch(self, notification: Notification) -> None:
        try:
            self._client.send_message(
                self._chat_id,
                format_reminder_message(notification),
                parse_mode=self._parse_mode,
            )
        except NotificationError as exc:
            logger.warning(
                "Telegram notification failed",
                notification_id=notification.id,
                task_id=notification.task_id,
                error=str(exc),
            )

    def close(self) -> None:
        self._client.close()


class LogNotifier:
    """Writes notifications to the log; used when no bot is configured."""

    def dispatch(self, notification: Notification) -> None:
        logger.info(
            "Notification",
            notification_id=notification.id,
            task_id=notification.task_id,
            priority=notification.priority,
            message=notification.message,
        )
