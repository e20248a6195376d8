from __future__ import annotations

from datetime import UTC, datetime
from queue import Queue
from threading import Thread
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger
from pydantic import BaseModel, ValidationError
from sqlalchemy import JSON, Boolean, Column, DateTime, String, Text, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from task_deadline_mcp.models import (
    Group,
    ReminderRecord,
    ReminderSettings,
    Task,
    parse_datetime,
    utc_now,
    validate_reminder_settings,
)

Base = declarative_base()

UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "priority",
        "status",
        "assignee",
        "tags",
        "group_id",
        "deadline",
        "reminder_settings",
    }
)

UPDATABLE_GROUP_FIELDS = frozenset({"name", "description", "color", "is_active"})

# pending -> in-progress -> completed -> pending
NEXT_STATUS = {
    "pending": "in-progress",
    "in-progress": "completed",
    "completed": "pending",
}


class TaskStoreError(RuntimeError):
    """The task store could not complete an operation."""


class TaskNotFoundError(TaskStoreError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class GroupNotFoundError(TaskStoreError):
    def __init__(self, group_id: str) -> None:
        super().__init__(f"Group not found: {group_id}")
        self.group_id = group_id


class BulkResult(BaseModel):
    task_id: str
    success: bool
    error: Optional[str] = None


class ImportResult(BaseModel):
    total: int
    imported: int
    skipped: int
    failed: int


# --- Models ---
class TaskRecord(Base):
    __tablename__ = "tasks"

    id = Column(String(64), primary_key=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    status = Column(String(32), nullable=False, default="pending")
    priority = Column(String(16), nullable=False, default="medium")
    assignee = Column(String(128), nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    group_id = Column(String(64), nullable=True, index=True)
    deadline = Column(DateTime, nullable=True)
    reminder_settings = Column(JSON, nullable=False)
    reminders = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class GroupRecord(Base):
    __tablename__ = "groups"

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    color = Column(String(7), nullable=False)
    created_by = Column(String(128), nullable=True)
    members = Column(JSON, nullable=False, default=list)
    admins = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite keeps no offset; store naive UTC and re-attach UTC on read.
    if value is None:
        return None
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_model(record: TaskRecord) -> Task:
    return Task.model_validate(
        {
            "id": record.id,
            "title": record.title,
            "description": record.description or "",
            "status": record.status,
            "priority": record.priority,
            "assignee": record.assignee,
            "tags": list(record.tags or []),
            "group_id": record.group_id,
            "deadline": record.deadline,
            "reminder_settings": record.reminder_settings,
            "reminders": list(record.reminders or []),
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }
    )


def _apply(record: TaskRecord, task: Task) -> None:
    record.title = task.title
    record.description = task.description
    record.status = task.status
    record.priority = task.priority
    record.assignee = task.assignee
    record.tags = list(task.tags)
    record.group_id = task.group_id
    record.deadline = _to_db_time(task.effective_deadline())
    record.reminder_settings = task.reminder_settings.model_dump(mode="json")
    record.reminders = [r.model_dump(mode="json") for r in task.reminders]
    record.created_at = _to_db_time(task.created_at)
    record.updated_at = _to_db_time(task.updated_at)


def _to_group(record: GroupRecord) -> Group:
    return Group.model_validate(
        {
            "id": record.id,
            "name": record.name,
            "description": record.description or "",
            "color": record.color,
            "created_by": record.created_by,
            "members": list(record.members or []),
            "admins": list(record.admins or []),
            "is_active": record.is_active,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }
    )


def _apply_group(record: GroupRecord, group: Group) -> None:
    record.name = group.name
    record.description = group.description
    record.color = group.color
    record.created_by = group.created_by
    record.members = list(group.members)
    record.admins = list(group.admins)
    record.is_active = group.is_active
    record.created_at = _to_db_time(group.created_at)
    record.updated_at = _to_db_time(group.updated_at)


def _require_deadline(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError(f"Invalid deadline: {value!r}")
    return parsed


def _require_group(session, group_id: Optional[str]) -> None:
    if group_id and session.get(GroupRecord, group_id) is None:
        raise GroupNotFoundError(group_id)


def _matches(task: Task, term: str) -> bool:
    return (
        term in task.title.lower()
        or term in task.description.lower()
        or any(term in tag.lower() for tag in task.tags)
    )


# --- Task store ---
class TaskStore:
    """
    SQLAlchemy-backed task and group store.

    All database work runs on one worker thread fed by a queue, so the
    reminder monitor thread and request handlers never share a session.

    Arguments:
        db_url (str, optional): SQLAlchemy URL, e.g. 'sqlite:///tasks.db'.
            Defaults to 'sqlite:///tasks.db'.

    Example:
        store = TaskStore(db_url="sqlite:///my_tasks.db")
        task = store.create_task("Ship release", deadline="2026-01-15T10:00:00Z")
    """

    def __init__(self, db_url: Optional[str] = None) -> None:
        self._init_db(db_url)
        self._start_worker()

    def _init_db(self, db_url: Optional[str] = None) -> None:
        if db_url is None:
            db_url = "sqlite:///tasks.db"
        self.engine = create_engine(
            db_url,
            echo=False,
            connect_args={"check_same_thread": False} if db_url.startswith("sqlite") else {},
        )
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.queue: Queue = Queue()
        logger.info("TaskStore initialized", db_url=db_url)

    def _start_worker(self) -> None:
        self.worker = Thread(target=self._process_queue, daemon=True)
        self.worker.start()
        logger.debug("TaskStore worker thread started")

    def _process_queue(self) -> None:
        while True:
            item = self.queue.get()
            if item is None:
                break
            func, result = item
            try:
                result.put(func())
            except Exception as exc:
                result.put(exc)

    def _enqueue(self, func):
        result: Queue = Queue()
        self.queue.put((func, result))
        output = result.get()
        if isinstance(output, SQLAlchemyError):
            logger.opt(exception=output).error("Database operation failed")
            raise TaskStoreError(f"Database operation failed: {output}") from output
        if isinstance(output, Exception):
            raise output
        return output

    def close(self) -> None:
        self.queue.put(None)
        self.worker.join(timeout=2)
        self.engine.dispose()

    # --- CRUD ---
    def create_task(
        self,
        title: str,
        description: str = "",
        *,
        priority: str = "medium",
        status: str = "pending",
        deadline: Any = None,
        assignee: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        group_id: Optional[str] = None,
        reminder_settings: ReminderSettings | dict | None = None,
    ) -> Task:
        now = utc_now()
        task = Task(
            title=title,
            description=description,
            priority=priority,
            status=status,
            deadline=_require_deadline(deadline),
            assignee=assignee,
            tags=list(tags or []),
            group_id=group_id or None,
            reminder_settings=(
                validate_reminder_settings(reminder_settings)
                if reminder_settings is not None
                else ReminderSettings()
            ),
            created_at=now,
            updated_at=now,
        )

        def _create() -> Task:
            with self.Session() as session:
                _require_group(session, task.group_id)
                record = TaskRecord(id=task.id)
                _apply(record, task)
                session.add(record)
                session.commit()
            return task

        created = self._enqueue(_create)
        logger.info("Task created", task_id=created.id, title=created.title)
        return created

    def get_task(self, task_id: str) -> Task:
        def _get() -> Task:
            with self.Session() as session:
                record = session.get(TaskRecord, task_id)
                if record is None:
                    raise TaskNotFoundError(task_id)
                return _to_model(record)

        return self._enqueue(_get)

    def get_all_tasks(self) -> List[Task]:
        def _list() -> List[Task]:
            with self.Session() as session:
                records = session.query(TaskRecord).order_by(TaskRecord.created_at).all()
            tasks: List[Task] = []
            for record in records:
                try:
                    tasks.append(_to_model(record))
                except ValidationError:
                    logger.warning("Skipping invalid task row", task_id=record.id)
            return tasks

        return self._enqueue(_list)

    def search_tasks(
        self,
        query: str = "",
        *,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> List[Task]:
        """Case-insensitive match on title, description or any tag.

        An empty query matches every task; the keyword filters still apply.
        """
        term = (query or "").strip().lower()
        found = []
        for task in self.get_all_tasks():
            if status and task.status != status:
                continue
            if priority and task.priority != priority:
                continue
            if group_id and task.group_id != group_id:
                continue
            if term and not _matches(task, term):
                continue
            found.append(task)
        return found

    def update_task(self, task_id: str, **fields: Any) -> Task:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        if "deadline" in fields:
            fields["deadline"] = _require_deadline(fields["deadline"])
        if "reminder_settings" in fields:
            fields["reminder_settings"] = validate_reminder_settings(
                fields["reminder_settings"]
            )
        if "group_id" in fields:
            fields["group_id"] = fields["group_id"] or None

        def _update() -> Task:
            with self.Session() as session:
                record = session.get(TaskRecord, task_id)
                if record is None:
                    raise TaskNotFoundError(task_id)
                if "group_id" in fields:
                    _require_group(session, fields["group_id"])
                current = _to_model(record)
                merged = {**current.model_dump(), **fields, "updated_at": utc_now()}
                task = Task.model_validate(merged)
                _apply(record, task)
                session.commit()
                return task

        updated = self._enqueue(_update)
        logger.info("Task updated", task_id=task_id, fields=sorted(fields))
        return updated

    def update_reminder_settings(
        self, task_id: str, settings: ReminderSettings | dict
    ) -> Task:
        return self.update_task(task_id, reminder_settings=settings)

    def complete_task(self, task_id: str) -> Task:
        return self.update_task(task_id, status="completed")

    def toggle_task_status(self, task_id: str) -> Task:
        """Advance pending -> in-progress -> completed, and completed back to pending."""
        current = self.get_task(task_id)
        return self.update_task(task_id, status=NEXT_STATUS[current.status])

    def delete_task(self, task_id: str) -> bool:
        def _delete() -> bool:
            with self.Session() as session:
                record = session.get(TaskRecord, task_id)
                if record is None:
                    return False
                session.delete(record)
                session.commit()
                return True

        deleted = self._enqueue(_delete)
        if deleted:
            logger.info("Task deleted", task_id=task_id)
        return deleted

    # --- Bulk operations ---
    def bulk_update_tasks(self, task_ids: Iterable[str], **fields: Any) -> List[BulkResult]:
        results = []
        for task_id in task_ids:
            try:
                self.update_task(task_id, **dict(fields))
                results.append(BulkResult(task_id=task_id, success=True))
            except (TaskStoreError, ValueError) as exc:
                results.append(BulkResult(task_id=task_id, success=False, error=str(exc)))
        return results

    def bulk_delete_tasks(self, task_ids: Iterable[str]) -> List[BulkResult]:
        results = []
        for task_id in task_ids:
            if self.delete_task(task_id):
                results.append(BulkResult(task_id=task_id, success=True))
            else:
                results.append(
                    BulkResult(task_id=task_id, success=False, error=f"Task not found: {task_id}")
                )
        return results

    def import_tasks(self, items: Iterable[Dict[str, Any]]) -> ImportResult:
        """Insert exported tasks. Ids already present are skipped, invalid entries counted as failed."""
        items = list(items)
        tasks: List[Task] = []
        failed = 0
        for item in items:
            try:
                tasks.append(Task.model_validate(item))
            except ValidationError as exc:
                failed += 1
                logger.warning("Skipping invalid task in import", error=str(exc))

        def _import() -> tuple[int, int, int]:
            imported = skipped = missing_group = 0
            with self.Session() as session:
                for task in tasks:
                    if session.get(TaskRecord, task.id) is not None:
                        skipped += 1
                        continue
                    if task.group_id and session.get(GroupRecord, task.group_id) is None:
                        missing_group += 1
                        logger.warning(
                            "Skipping imported task with unknown group",
                            task_id=task.id,
                            group_id=task.group_id,
                        )
                        continue
                    record = TaskRecord(id=task.id)
                    _apply(record, task)
                    session.add(record)
                    imported += 1
                session.commit()
            return imported, skipped, missing_group

        imported, skipped, missing_group = self._enqueue(_import)
        result = ImportResult(
            total=len(items),
            imported=imported,
            skipped=skipped,
            failed=failed + missing_group,
        )
        logger.info("Tasks imported", **result.model_dump())
        return result

    # --- Reminder log ---
    def persist_reminder_log(
        self,
        task_id: str,
        reminders: Iterable[ReminderRecord],
        updated_at: datetime,
    ) -> None:
        """Merge ``reminders`` into the stored log by key.

        Stored entries are never dropped or rewritten, so concurrent writers
        holding different snapshots cannot shrink the log.
        """
        payload = [r.model_dump(mode="json") for r in reminders]

        def _persist() -> int:
            with self.Session() as session:
                record = session.get(TaskRecord, task_id)
                if record is None:
                    raise TaskNotFoundError(task_id)
                stored = list(record.reminders or [])
                known = {entry.get("key") for entry in stored}
                added = [entry for entry in payload if entry["key"] not in known]
                if added:
                    record.reminders = stored + added
                    record.updated_at = _to_db_time(updated_at)
                    session.commit()
                return len(added)

        added = self._enqueue(_persist)
        logger.debug("Reminder log persisted", task_id=task_id, added=added)

    # --- Groups ---
    def create_group(
        self,
        name: str,
        description: str = "",
        *,
        color: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Group:
        now = utc_now()
        fields: Dict[str, Any] = {
            "name": name,
            "description": description,
            "created_by": created_by,
            "members": [created_by] if created_by else [],
            "admins": [created_by] if created_by else [],
            "created_at": now,
            "updated_at": now,
        }
        if color:
            fields["color"] = color
        group = Group(**fields)

        def _create() -> Group:
            with self.Session() as session:
                record = GroupRecord(id=group.id)
                _apply_group(record, group)
                session.add(record)
                session.commit()
            return group

        created = self._enqueue(_create)
        logger.info("Group created", group_id=created.id, name=created.name)
        return created

    def get_group(self, group_id: str) -> Group:
        def _get() -> Group:
            with self.Session() as session:
                record = session.get(GroupRecord, group_id)
                if record is None:
                    raise GroupNotFoundError(group_id)
                return _to_group(record)

        return self._enqueue(_get)

    def get_all_groups(self, *, active_only: bool = False) -> List[Group]:
        def _list() -> List[Group]:
            with self.Session() as session:
                query = session.query(GroupRecord)
                if active_only:
                    query = query.filter(GroupRecord.is_active.is_(True))
                return [_to_group(r) for r in query.order_by(GroupRecord.created_at).all()]

        return self._enqueue(_list)

    def get_tasks_by_group(self, group_id: str) -> List[Task]:
        self.get_group(group_id)
        return [task for task in self.get_all_tasks() if task.group_id == group_id]

    def update_group(self, group_id: str, **fields: Any) -> Group:
        unknown = set(fields) - UPDATABLE_GROUP_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        def _change(group: Group) -> Group:
            return Group.model_validate({**group.model_dump(), **fields})

        updated = self._mutate_group(group_id, _change)
        logger.info("Group updated", group_id=group_id, fields=sorted(fields))
        return updated

    def delete_group(self, group_id: str) -> bool:
        """Delete an empty group. Raises ValueError while tasks still belong to it."""

        def _delete() -> bool:
            with self.Session() as session:
                record = session.get(GroupRecord, group_id)
                if record is None:
                    return False
                in_use = session.query(TaskRecord).filter(TaskRecord.group_id == group_id).count()
                if in_use:
                    raise ValueError(f"Cannot delete group with {in_use} existing task(s)")
                session.delete(record)
                session.commit()
                return True

        deleted = self._enqueue(_delete)
        if deleted:
            logger.info("Group deleted", group_id=group_id)
        return deleted

    def add_group_member(self, group_id: str, member_id: str, *, admin: bool = False) -> Group:
        def _change(group: Group) -> Group:
            if group.is_member(member_id):
                raise ValueError(f"{member_id} is already a member of this group")
            group.members.append(member_id)
            if admin:
                group.admins.append(member_id)
            return group

        return self._mutate_group(group_id, _change)

    def remove_group_member(self, group_id: str, member_id: str) -> Group:
        def _change(group: Group) -> Group:
            if member_id == group.created_by:
                raise ValueError("Cannot remove the group creator")
            if not group.is_member(member_id):
                raise ValueError(f"{member_id} is not a member of this group")
            group.members.remove(member_id)
            if group.is_admin(member_id):
                group.admins.remove(member_id)
            return group

        return self._mutate_group(group_id, _change)

    def set_group_admin(self, group_id: str, member_id: str, admin: bool = True) -> Group:
        def _change(group: Group) -> Group:
            if not group.is_member(member_id):
                raise ValueError(f"{member_id} is not a member of this group")
            if admin and not group.is_admin(member_id):
                group.admins.append(member_id)
            elif not admin and group.is_admin(member_id):
                if member_id == group.created_by:
                    raise ValueError("Cannot demote the group creator")
                group.admins.remove(member_id)
            return group

        return self._mutate_group(group_id, _change)

    def _mutate_group(self, group_id: str, change: Callable[[Group], Group]) -> Group:
        def _mutate() -> Group:
            with self.Session() as session:
                record = session.get(GroupRecord, group_id)
                if record is None:
                    raise GroupNotFoundError(group_id)
                group = change(_to_group(record))
                group.updated_at = utc_now()
                _apply_group(record, group)
                session.commit()
                return group

        return self._enqueue(_mutate)
