"""Composition root shared by the MCP server and the CLI.

Builds the task store, the notifier and the deadline monitor from settings.
Nothing else in the package reads settings or constructs collaborators.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from task_deadline_mcp.deadline_monitor import DeadlineMonitor
from task_deadline_mcp.notifications import LogNotifier, Notifier, TelegramNotifier
from task_deadline_mcp.settings import Settings, get_settings
from task_deadline_mcp.task_store import TaskStore
from task_deadline_mcp.telegram_client import TelegramBotClient


@dataclass
class Runtime:
    settings: Settings
    store: TaskStore
    notifier: Notifier
    monitor: DeadlineMonitor
    executor: Optional[ThreadPoolExecutor] = None

    def close(self) -> None:
        self.monitor.close()
        if self.executor is not None:
            self.executor.shutdown(wait=True)
        if isinstance(self.notifier, TelegramNotifier):
            self.notifier.close()
        self.store.close()


def build_notifier(settings: Settings) -> Notifier:
    bot = settings.telegram_bot_settings
    if not bot.is_configured:
        logger.warning("Telegram bot is not configured; reminders will only be logged")
        return LogNotifier()
    client = TelegramBotClient(
        bot.api_token,
        base_url=bot.base_url,
        timeout_seconds=bot.timeout_seconds,
    )
    return TelegramNotifier(client, bot.chat_id, parse_mode=bot.parse_mode or None)


def create_runtime(settings: Optional[Settings] = None) -> Runtime:
    """Wire concrete collaborators. Falls back to get_settings() when none are given."""
    if settings is None:
        settings = get_settings()

    store = TaskStore(settings.resolved_database_url())
    notifier = build_notifier(settings)
    executor = (
        ThreadPoolExecutor(
            max_workers=settings.dispatch_workers, thread_name_prefix="reminder-dispatch"
        )
        if settings.dispatch_workers > 0
        else None
    )
    monitor = DeadlineMonitor(
        store,
        notifier,
        check_interval_ms=settings.reminder_check_interval_ms,
        executor=executor,
    )
    return Runtime(
        settings=settings,
        store=store,
        notifier=notifier,
        monitor=monitor,
        executor=executor,
    )
