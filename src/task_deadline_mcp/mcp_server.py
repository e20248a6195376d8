"""Task deadline MCP server entrypoint.

Exposes task CRUD, search, bulk and import operations, groups, reminder
configuration and deadline queries over MCP.
Reminder delivery runs in the background deadline monitor, which is started
together with the server and stopped when it exits.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from fastmcp import FastMCP
from loguru import logger
from pydantic import BaseModel, Field

from task_deadline_mcp.bootstrap import create_runtime
from task_deadline_mcp.deadline_monitor import DeadlineMonitor
from task_deadline_mcp.logging_config import setup_logging
from task_deadline_mcp.models import Priority, ReminderSettings, Severity, Task, TaskStatus
from task_deadline_mcp.reminder_scheduler import describe_upcoming
from task_deadline_mcp.settings import get_settings
from task_deadline_mcp.task_statistics import compute_task_statistics
from task_deadline_mcp.task_store import TaskStore

# ---------------------------------------------------------------------------
# Models


class CreateTaskRequest(BaseModel):
    title: str = Field(description="Task title or summary")
    description: str = Field("", description="Detailed task description or notes")
    priority: Priority = Field(
        "medium", description="Task priority: 'low', 'medium', or 'high'"
    )
    status: TaskStatus = Field(
        "pending", description="Task status: 'pending', 'in-progress', or 'completed'"
    )
    deadline: Optional[str] = Field(
        None, description="Deadline in ISO 8601 format (e.g., '2026-01-15T10:00:00Z')"
    )
    assignee: Optional[str] = Field(
        None, description="Person or entity assigned to the task"
    )
    tags: List[str] = Field(
        default_factory=list, description="List of tags for categorization"
    )
    group_id: Optional[str] = Field(None, description="Group the task belongs to")
    reminder_settings: Optional[ReminderSettings] = Field(
        None,
        description="Reminder configuration; defaults to 1 day and 2 hours before the deadline",
    )


class TaskIdRequest(BaseModel):
    task_id: str = Field(description="Task identifier")


class UpdateTaskRequest(BaseModel):
    task_id: str = Field(description="Task identifier")
    fields: Dict[str, Any] = Field(
        description="Fields to change, e.g. {'status': 'completed', 'deadline': '2026-01-20T09:00:00Z'}"
    )


class UpdateReminderSettingsRequest(BaseModel):
    task_id: str = Field(description="Task identifier")
    reminder_settings: Dict[str, Any] = Field(
        description="{'enabled': true, 'intervals': [{'value': 2, 'unit': 'hour', 'enabled': true}]}; unit is minute, hour, day or week"
    )


class ListTaskRequest(BaseModel):
    status: Optional[TaskStatus] = Field(None, description="Filter by status")
    priority: Optional[Priority] = Field(None, description="Filter by priority")
    group_id: Optional[str] = Field(None, description="Filter by group id")
    severity: Optional[Severity] = Field(
        None,
        description="Filter by deadline severity: overdue, critical, urgent, soon, normal",
    )
    include_description: bool = Field(
        False, description="Whether to include task descriptions in results"
    )


class UpcomingDeadlinesRequest(BaseModel):
    days: int = Field(7, ge=1, le=365, description="How many days ahead to look")


class ManualReminderRequest(BaseModel):
    task_id: str = Field(description="Task identifier")
    message: Optional[str] = Field(
        None, description="Custom message; defaults to the time left until the deadline"
    )


class SearchTasksRequest(BaseModel):
    query: str = Field("", description="Text to find in title, description or tags")
    status: Optional[TaskStatus] = Field(None, description="Filter by status")
    priority: Optional[Priority] = Field(None, description="Filter by priority")
    group_id: Optional[str] = Field(None, description="Filter by group id")


class TaskStatisticsRequest(BaseModel):
    group_id: Optional[str] = Field(
        None, description="Restrict statistics to one group; all tasks if omitted"
    )


class BulkUpdateRequest(BaseModel):
    task_ids: List[str] = Field(description="Tasks to update")
    fields: Dict[str, Any] = Field(
        description="Fields applied to every task, e.g. {'priority': 'high'}"
    )


class BulkDeleteRequest(BaseModel):
    task_ids: List[str] = Field(description="Tasks to delete")


class ImportTasksRequest(BaseModel):
    tasks: List[Dict[str, Any]] = Field(
        description="Tasks in the export format; existing ids are skipped"
    )


class CreateGroupRequest(BaseModel):
    name: str = Field(description="Group name (1-100 characters)")
    description: str = Field("", description="What the group is for")
    color: Optional[str] = Field(None, description="Hex color such as '#10b981'")
    created_by: Optional[str] = Field(
        None, description="Member id of the creator; becomes member and admin"
    )


class GroupIdRequest(BaseModel):
    group_id: str = Field(description="Group identifier")


class ListGroupsRequest(BaseModel):
    active_only: bool = Field(False, description="Only return active groups")


class UpdateGroupRequest(BaseModel):
    group_id: str = Field(description="Group identifier")
    fields: Dict[str, Any] = Field(
        description="Fields to change: name, description, color, is_active"
    )


class GroupMemberRequest(BaseModel):
    group_id: str = Field(description="Group identifier")
    member_id: str = Field(description="Member identifier, e.g. a Telegram user id")
    admin: bool = Field(False, description="Grant admin rights (add) or keep them (set_group_admin)")


# ---------------------------------------------------------------------------
# Helpers


def _task_view(task: Task, now: datetime, *, include_description: bool = True) -> dict:
    payload = task.model_dump(mode="json")
    if not include_description:
        payload.pop("description", None)
    payload["severity"] = task.severity(now)
    payload["is_overdue"] = task.is_overdue(now)
    payload["days_overdue"] = task.days_overdue(now)
    payload["time_until_deadline"] = task.formatted_time_until_deadline(now)
    return payload


def _priority_order(priority: str) -> int:
    order = {"high": 0, "medium": 1, "low": 2}
    return order.get(priority, 3)


# ---------------------------------------------------------------------------
# Server


def build_server(
    store: TaskStore,
    monitor: DeadlineMonitor,
    *,
    name: str = "task-deadline-mcp",
    version: str = "0.1.0",
) -> FastMCP:
    app = FastMCP(name=name, version=version)

    @app.tool()
    def create_task(
        body: Annotated[
            CreateTaskRequest,
            "Request body for the new task. Only title is required; deadline enables reminders.",
        ],
    ) -> dict:
        """Create a task, optionally with a deadline and reminder intervals.

        Example:
        {"title": "Review PR", "priority": "high", "deadline": "2026-01-15T10:00:00Z"}

        Example with custom reminders:
        {"title": "Release", "deadline": "2026-01-20T09:00:00Z",
         "reminder_settings": {"enabled": true, "intervals": [{"value": 1, "unit": "week", "enabled": true}]}}
        """
        task = store.create_task(
            body.title,
            body.description,
            priority=body.priority,
            status=body.status,
            deadline=body.deadline,
            assignee=body.assignee,
            tags=body.tags,
            group_id=body.group_id,
            reminder_settings=body.reminder_settings,
        )
        return {"task": _task_view(task, monitor.now())}

    @app.tool()
    def read_task(
        body: Annotated[TaskIdRequest, "Request body with the task id to read."],
    ) -> dict:
        """Read one task with its computed deadline status.

        Example: {"task_id": "3f2c..."}
        """
        return {"task": _task_view(store.get_task(body.task_id), monitor.now())}

    @app.tool()
    def update_task(
        body: Annotated[
            UpdateTaskRequest,
            "Request body with the task id and the fields to change. Other fields stay unchanged.",
        ],
    ) -> dict:
        """Update fields of an existing task.

        Allowed fields: title, description, priority, status, assignee, tags,
        deadline, reminder_settings, group_id. Sent reminders are never removed.

        Example: {"task_id": "3f2c...", "fields": {"status": "completed"}}
        """
        task = store.update_task(body.task_id, **body.fields)
        return {"task": _task_view(task, monitor.now())}

    @app.tool()
    def delete_task(
        body: Annotated[TaskIdRequest, "Request body with the task id to delete."],
    ) -> dict:
        """Delete a task and its reminder history.

        Example: {"task_id": "3f2c..."}
        """
        return {"deleted": store.delete_task(body.task_id)}

    @app.tool()
    def list_tasks(
        body: Annotated[
            ListTaskRequest,
            "Request body with optional filters by status, priority and deadline severity.",
        ],
    ) -> dict:
        """List tasks sorted by priority (high to low) and deadline (earliest first).

        Example: list critical tasks:
        {"severity": "critical"}
        """
        current = monitor.now()
        tasks = []
        for task in store.get_all_tasks():
            if body.status and task.status != body.status:
                continue
            if body.priority and task.priority != body.priority:
                continue
            if body.group_id and task.group_id != body.group_id:
                continue
            if body.severity and task.severity(current) != body.severity:
                continue
            tasks.append(task)

        def _sort_key(task: Task) -> tuple[int, datetime]:
            fallback = datetime.max.replace(tzinfo=current.tzinfo)
            return (_priority_order(task.priority), task.effective_deadline() or fallback)

        tasks.sort(key=_sort_key)
        return {
            "total": len(tasks),
            "tasks": [
                _task_view(t, current, include_description=body.include_description)
                for t in tasks
            ],
        }

    @app.tool()
    def update_reminder_settings(
        body: Annotated[
            UpdateReminderSettingsRequest,
            "Request body with the task id and the complete reminder configuration.",
        ],
    ) -> dict:
        """Replace a task's reminder configuration.

        Reminders already sent stay recorded. Units other than minute, hour,
        day and week are rejected.

        Example:
        {"task_id": "3f2c...", "reminder_settings": {"enabled": true, "intervals": [
            {"value": 1, "unit": "day", "enabled": true},
            {"value": 30, "unit": "minute", "enabled": true}]}}
        """
        task = monitor.update_reminder_settings(body.task_id, body.reminder_settings)
        return {"task": _task_view(task, monitor.now())}

    @app.tool()
    def list_upcoming_reminders(
        body: Annotated[TaskIdRequest, "Request body with the task id."],
    ) -> dict:
        """List reminders of a task that have not fired yet, earliest first.

        Example: {"task_id": "3f2c..."}
        """
        upcoming = monitor.list_upcoming_reminders(body.task_id)
        return {"reminders": [describe_upcoming(item) for item in upcoming]}

    @app.tool()
    def list_overdue_tasks() -> dict:
        """List unfinished tasks whose deadline has passed, oldest deadline first.

        Example: {}
        """
        current = monitor.now()
        return {"tasks": [_task_view(t, current) for t in monitor.get_overdue_tasks()]}

    @app.tool()
    def list_upcoming_deadlines(
        body: Annotated[UpcomingDeadlinesRequest, "Request body with the look-ahead in days."],
    ) -> dict:
        """List unfinished tasks due within the next N days, earliest first.

        Example: {"days": 3}
        """
        current = monitor.now()
        tasks = monitor.get_upcoming_deadlines(body.days)
        return {"tasks": [_task_view(t, current) for t in tasks]}

    @app.tool()
    def get_deadline_statistics() -> dict:
        """Aggregate deadline statistics: overdue, due today/tomorrow/this week, reminders sent.

        Example: {}
        """
        return monitor.get_deadline_statistics().model_dump()

    @app.tool()
    def send_manual_reminder(
        body: Annotated[
            ManualReminderRequest,
            "Request body with the task id and an optional custom message.",
        ],
    ) -> dict:
        """Send a reminder for a task right now, independent of its schedule.

        The task must have a deadline.

        Example: {"task_id": "3f2c...", "message": "Please finish the review today"}
        """
        notification = monitor.send_manual_reminder(body.task_id, body.message)
        return {"notification": notification.model_dump(mode="json")}

    @app.tool()
    def check_reminders() -> dict:
        """Run one reminder pass immediately and report what was sent.

        Example: {}
        """
        sent = monitor.check_and_send_reminders()
        return {"sent": [n.model_dump(mode="json") for n in sent]}

    # Task management

    @app.tool()
    def search_tasks(
        body: Annotated[
            SearchTasksRequest,
            "Request body with the search text and optional filters.",
        ],
    ) -> dict:
        """Find tasks whose title, description or tags contain the query (case-insensitive).

        Example: {"query": "invoice", "status": "pending"}
        """
        current = monitor.now()
        tasks = store.search_tasks(
            body.query,
            status=body.status,
            priority=body.priority,
            group_id=body.group_id,
        )
        return {"total": len(tasks), "tasks": [_task_view(t, current) for t in tasks]}

    @app.tool()
    def complete_task(
        body: Annotated[TaskIdRequest, "Request body with the task id to complete."],
    ) -> dict:
        """Mark a task completed. Completed tasks receive no further reminders.

        Example: {"task_id": "3f2c..."}
        """
        return {"task": _task_view(store.complete_task(body.task_id), monitor.now())}

    @app.tool()
    def toggle_task_status(
        body: Annotated[TaskIdRequest, "Request body with the task id to advance."],
    ) -> dict:
        """Advance a task's status: pending -> in-progress -> completed -> pending.

        Example: {"task_id": "3f2c..."}
        """
        return {"task": _task_view(store.toggle_task_status(body.task_id), monitor.now())}

    @app.tool()
    def bulk_update_tasks(
        body: Annotated[
            BulkUpdateRequest,
            "Request body with task ids and the fields to set on each of them.",
        ],
    ) -> dict:
        """Apply the same field changes to several tasks. Failures are reported per task.

        Example: {"task_ids": ["3f2c...", "9a1b..."], "fields": {"priority": "high"}}
        """
        results = store.bulk_update_tasks(body.task_ids, **body.fields)
        return {"results": [r.model_dump() for r in results]}

    @app.tool()
    def bulk_delete_tasks(
        body: Annotated[BulkDeleteRequest, "Request body with the task ids to delete."],
    ) -> dict:
        """Delete several tasks. Unknown ids are reported as failures.

        Example: {"task_ids": ["3f2c...", "9a1b..."]}
        """
        results = store.bulk_delete_tasks(body.task_ids)
        return {"results": [r.model_dump() for r in results]}

    @app.tool()
    def import_tasks(
        body: Annotated[
            ImportTasksRequest,
            "Request body with tasks in the same shape the export produces.",
        ],
    ) -> dict:
        """Import tasks, keeping their ids and reminder history.

        Tasks whose id already exists are skipped; invalid entries are counted as failed.

        Example: {"tasks": [{"id": "3f2c...", "title": "Migrated", "deadline": "2026-01-15T10:00:00Z"}]}
        """
        return store.import_tasks(body.tasks).model_dump()

    @app.tool()
    def get_task_statistics(
        body: Annotated[
            TaskStatisticsRequest,
            "Request body with an optional group id.",
        ],
    ) -> dict:
        """Counts by status and priority, completion rate, overdue and recently completed tasks.

        Example: {} or {"group_id": "a81c..."}
        """
        tasks = (
            store.get_tasks_by_group(body.group_id)
            if body.group_id
            else store.get_all_tasks()
        )
        return compute_task_statistics(tasks, monitor.now()).model_dump()

    @app.tool()
    def list_tasks_due_today() -> dict:
        """List unfinished tasks whose deadline falls on today's date (UTC).

        Example: {}
        """
        current = monitor.now()
        return {"tasks": [_task_view(t, current) for t in monitor.get_tasks_due_today()]}

    # Groups

    @app.tool()
    def create_group(
        body: Annotated[CreateGroupRequest, "Request body for the new group."],
    ) -> dict:
        """Create a group to organize tasks.

        Example: {"name": "Backend", "created_by": "1234567", "color": "#10b981"}
        """
        return {"group": store.create_group(
            body.name,
            body.description,
            color=body.color,
            created_by=body.created_by,
        ).model_dump(mode="json")}

    @app.tool()
    def read_group(
        body: Annotated[GroupIdRequest, "Request body with the group id."],
    ) -> dict:
        """Read a group together with its task statistics.

        Example: {"group_id": "a81c..."}
        """
        group = store.get_group(body.group_id)
        tasks = store.get_tasks_by_group(body.group_id)
        return {
            "group": group.model_dump(mode="json"),
            "statistics": compute_task_statistics(tasks, monitor.now()).model_dump(),
        }

    @app.tool()
    def list_groups(
        body: Annotated[ListGroupsRequest, "Request body with an optional active filter."],
    ) -> dict:
        """List groups in creation order.

        Example: {"active_only": true}
        """
        groups = store.get_all_groups(active_only=body.active_only)
        return {"groups": [g.model_dump(mode="json") for g in groups]}

    @app.tool()
    def update_group(
        body: Annotated[UpdateGroupRequest, "Request body with the group id and fields to change."],
    ) -> dict:
        """Rename, recolor, describe, activate or deactivate a group.

        Example: {"group_id": "a81c...", "fields": {"is_active": false}}
        """
        group = store.update_group(body.group_id, **body.fields)
        return {"group": group.model_dump(mode="json")}

    @app.tool()
    def delete_group(
        body: Annotated[GroupIdRequest, "Request body with the group id to delete."],
    ) -> dict:
        """Delete a group. Fails while tasks still belong to it.

        Example: {"group_id": "a81c..."}
        """
        return {"deleted": store.delete_group(body.group_id)}

    @app.tool()
    def add_group_member(
        body: Annotated[GroupMemberRequest, "Request body with the group and the new member."],
    ) -> dict:
        """Add a member to a group, optionally as admin.

        Example: {"group_id": "a81c...", "member_id": "7654321", "admin": false}
        """
        group = store.add_group_member(body.group_id, body.member_id, admin=body.admin)
        return {"group": group.model_dump(mode="json")}

    @app.tool()
    def remove_group_member(
        body: Annotated[GroupMemberRequest, "Request body with the group and the member to remove."],
    ) -> dict:
        """Remove a member (and their admin rights). The creator cannot be removed.

        Example: {"group_id": "a81c...", "member_id": "7654321"}
        """
        group = store.remove_group_member(body.group_id, body.member_id)
        return {"group": group.model_dump(mode="json")}

    @app.tool()
    def set_group_admin(
        body: Annotated[
            GroupMemberRequest,
            "Request body with the group, the member and whether they should be admin.",
        ],
    ) -> dict:
        """Promote a member to admin ("admin": true) or demote them ("admin": false).

        Example: {"group_id": "a81c...", "member_id": "7654321", "admin": true}
        """
        group = store.set_group_admin(body.group_id, body.member_id, body.admin)
        return {"group": group.model_dump(mode="json")}

    return app


def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    logger.info("Starting task deadline MCP server")

    runtime = create_runtime(settings)
    runtime.monitor.start()
    app = build_server(
        runtime.store,
        runtime.monitor,
        name=settings.app_name,
        version=settings.app_version,
    )
    try:
        app.run(show_banner=False)
    finally:
        runtime.close()


if __name__ == "__main__":
    main()
