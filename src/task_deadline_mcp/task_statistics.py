"""Aggregate counts over a set of tasks."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from pydantic import BaseModel, Field

from task_deadline_mcp.models import Task, resolve_now


class TaskStatistics(BaseModel):
    total: int = 0
    completed: int = 0
    pending: int = 0
    in_progress: int = 0
    overdue: int = 0
    completion_rate: int = Field(0, description="Completed share in whole percent")
    by_priority: Dict[str, int] = Field(
        default_factory=lambda: {"high": 0, "medium": 0, "low": 0}
    )
    by_assignee: Dict[str, int] = Field(default_factory=dict)
    completed_this_week: int = 0
    completed_this_month: int = 0


def compute_task_statistics(
    tasks: Iterable[Task], now: Optional[datetime] = None
) -> TaskStatistics:
    current = resolve_now(now)
    week_ago = current - timedelta(days=7)
    month_ago = current - timedelta(days=30)

    stats = TaskStatistics()
    for task in tasks:
        stats.total += 1
        if task.status == "completed":
            stats.completed += 1
            if task.updated_at >= week_ago:
                stats.completed_this_week += 1
            if task.updated_at >= month_ago:
                stats.completed_this_month += 1
        elif task.status == "in-progress":
            stats.in_progress += 1
        else:
            stats.pending += 1

        if task.is_overdue(current) and not task.is_completed():
            stats.overdue += 1
        stats.by_priority[task.priority] = stats.by_priority.get(task.priority, 0) + 1
        if task.assignee:
            stats.by_assignee[task.assignee] = stats.by_assignee.get(task.assignee, 0) + 1

    if stats.total:
        stats.completion_rate = round(stats.completed / stats.total * 100)
    return stats
