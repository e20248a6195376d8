import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml
from loguru import logger

from task_deadline_mcp.bootstrap import Runtime, create_runtime
from task_deadline_mcp.logging_config import setup_logging
from task_deadline_mcp.models import Task
from task_deadline_mcp.settings import get_settings
from task_deadline_mcp.task_statistics import compute_task_statistics
from task_deadline_mcp.task_store import TaskNotFoundError

app = typer.Typer(help="Task deadline reminders.")

EXPORT_KEYS = [
    "id",
    "title",
    "description",
    "status",
    "priority",
    "assignee",
    "tags",
    "group_id",
    "deadline",
    "reminder_settings",
    "reminders",
    "created_at",
    "updated_at",
]


def _runtime() -> Runtime:
    settings = get_settings()
    setup_logging(settings)
    return create_runtime(settings)


def serialize_tasks(tasks: List[Task]) -> str:
    payload: List[Dict[str, Any]] = []
    for task in tasks:
        data = task.model_dump(mode="json")
        # Stable key order for readable diffs.
        payload.append({k: data.get(k) for k in EXPORT_KEYS})
    return yaml.safe_dump({"tasks": payload}, sort_keys=False, allow_unicode=True)


@app.command("init-db")
def init_db() -> None:
    """Create the task database if it does not exist."""
    runtime = _runtime()
    try:
        typer.echo(f"Database ready: {runtime.settings.resolved_database_url()}")
    finally:
        runtime.close()


@app.command()
def check() -> None:
    """Run a single reminder pass and print what was sent."""
    runtime = _runtime()
    try:
        sent = runtime.monitor.check_and_send_reminders()
        if not sent:
            typer.echo("No reminders due.")
        for notification in sent:
            typer.echo(f"[{notification.priority}] {notification.message}")
    finally:
        runtime.close()


@app.command()
def watch(
    interval_ms: Optional[int] = typer.Option(
        None, "--interval-ms", help="Polling cadence in milliseconds (minimum 10000)"
    ),
) -> None:
    """Run the reminder monitor in the foreground until interrupted."""
    runtime = _runtime()
    if interval_ms is not None:
        runtime.monitor.set_check_interval(interval_ms)
    runtime.monitor.start()
    typer.echo(f"Watching deadlines every {runtime.monitor.check_interval_ms} ms. Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping monitor")
    finally:
        runtime.close()


@app.command()
def stats() -> None:
    """Print deadline statistics."""
    runtime = _runtime()
    try:
        statistics = runtime.monitor.get_deadline_statistics()
        for key, value in statistics.model_dump().items():
            typer.echo(f"{key.replace('_', ' ')}: {value}")
    finally:
        runtime.close()


@app.command()
def overdue() -> None:
    """List unfinished tasks past their deadline."""
    runtime = _runtime()
    try:
        now = runtime.monitor.now()
        tasks = runtime.monitor.get_overdue_tasks()
        if not tasks:
            typer.echo("Nothing overdue.")
        for task in tasks:
            typer.echo(f"{task.id}  {task.title}  ({task.formatted_time_until_deadline(now)})")
    finally:
        runtime.close()


@app.command()
def export(
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write YAML to this file instead of stdout"
    ),
) -> None:
    """Export all tasks as YAML."""
    runtime = _runtime()
    try:
        content = serialize_tasks(runtime.store.get_all_tasks())
    finally:
        runtime.close()
    if output is None:
        typer.echo(content)
    else:
        output.write_text(content, encoding="utf-8")
        typer.echo(f"Exported to {output}")


@app.command("import")
def import_(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML file from export"),
) -> None:
    """Import tasks from a YAML export. Existing ids are skipped."""
    data = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
    items = data.get("tasks", []) if isinstance(data, dict) else data
    if not isinstance(items, list):
        typer.echo("Expected a list of tasks or a mapping with a 'tasks' list.", err=True)
        raise typer.Exit(code=1)
    runtime = _runtime()
    try:
        result = runtime.store.import_tasks(items)
    finally:
        runtime.close()
    typer.echo(
        f"Imported {result.imported} of {result.total} "
        f"(skipped {result.skipped}, failed {result.failed})"
    )


@app.command()
def search(
    query: str = typer.Argument(..., help="Text to find in title, description or tags"),
    status: Optional[str] = typer.Option(None, "--status", help="Only tasks with this status"),
) -> None:
    """Search tasks by text."""
    runtime = _runtime()
    try:
        tasks = runtime.store.search_tasks(query, status=status)
    finally:
        runtime.close()
    if not tasks:
        typer.echo("No matching tasks.")
    for task in tasks:
        typer.echo(f"{task.id}  [{task.status}]  {task.title}")


@app.command()
def toggle(task_id: str = typer.Argument(..., help="Task id")) -> None:
    """Advance a task's status: pending, in-progress, completed, pending."""
    runtime = _runtime()
    try:
        task = runtime.store.toggle_task_status(task_id)
    except TaskNotFoundError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    finally:
        runtime.close()
    typer.echo(f"{task.title}: {task.status}")


@app.command("task-stats")
def task_stats(
    group: Optional[str] = typer.Option(None, "--group", help="Restrict to one group id"),
) -> None:
    """Print task counts and completion rate."""
    runtime = _runtime()
    try:
        tasks = runtime.store.get_tasks_by_group(group) if group else runtime.store.get_all_tasks()
        statistics = compute_task_statistics(tasks, runtime.monitor.now())
    finally:
        runtime.close()
    for key, value in statistics.model_dump().items():
        typer.echo(f"{key.replace('_', ' ')}: {value}")


if __name__ == "__main__":
    app()
