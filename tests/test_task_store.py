from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from task_deadline_mcp.deadline_monitor import DeadlineMonitor
from task_deadline_mcp.models import ReminderConfigError, ReminderRecord
from task_deadline_mcp.task_store import GroupNotFoundError, TaskNotFoundError, TaskStore

from tests.fakes import BASE_NOW, FakeClock, RecordingNotifier

DEADLINE = "2026-05-01T09:30:00Z"


def test_create_and_read_task(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task(
        "Prepare slides",
        "For the quarterly review",
        priority="high",
        deadline=DEADLINE,
        assignee="dana",
        tags=["work", "review"],
    )

    task = sqlite_store.get_task(created.id)

    assert task.title == "Prepare slides"
    assert task.description == "For the quarterly review"
    assert task.priority == "high"
    assert task.status == "pending"
    assert task.assignee == "dana"
    assert task.tags == ["work", "review"]
    assert task.deadline == datetime(2026, 5, 1, 9, 30, tzinfo=UTC)
    assert task.deadline.tzinfo is not None
    assert [(i.value, i.unit) for i in task.reminder_settings.intervals] == [
        (1, "day"),
        (2, "hour"),
        (15, "minute"),
    ]
    assert task.reminders == []


def test_create_task_without_deadline(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Someday")

    assert sqlite_store.get_task(created.id).deadline is None


def test_create_task_rejects_invalid_deadline(sqlite_store: TaskStore) -> None:
    with pytest.raises(ValueError):
        sqlite_store.create_task("Broken", deadline="next tuesday")

    assert sqlite_store.get_all_tasks() == []


def test_create_task_rejects_unknown_unit(sqlite_store: TaskStore) -> None:
    with pytest.raises(ReminderConfigError):
        sqlite_store.create_task(
            "Broken",
            deadline=DEADLINE,
            reminder_settings={"intervals": [{"value": 1, "unit": "month"}]},
        )


def test_get_all_tasks_in_creation_order(sqlite_store: TaskStore) -> None:
    first = sqlite_store.create_task("First")
    second = sqlite_store.create_task("Second")

    assert [t.id for t in sqlite_store.get_all_tasks()] == [first.id, second.id]


def test_update_task(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Draft", deadline=DEADLINE)

    updated = sqlite_store.update_task(
        created.id, status="in-progress", deadline="2026-05-02T10:00:00+02:00"
    )

    assert updated.status == "in-progress"
    assert updated.deadline == datetime(2026, 5, 2, 8, 0, tzinfo=UTC)
    reread = sqlite_store.get_task(created.id)
    assert reread.status == "in-progress"
    assert reread.deadline == updated.deadline
    assert reread.updated_at >= created.updated_at


def test_update_task_clears_deadline(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Draft", deadline=DEADLINE)

    sqlite_store.update_task(created.id, deadline=None)

    assert sqlite_store.get_task(created.id).deadline is None


def test_update_task_rejects_unknown_field(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Draft")

    with pytest.raises(ValueError):
        sqlite_store.update_task(created.id, reminders=[])


def test_update_task_rejects_invalid_deadline(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Draft", deadline=DEADLINE)

    with pytest.raises(ValueError):
        sqlite_store.update_task(created.id, deadline="soon")

    assert sqlite_store.get_task(created.id).deadline is not None


def test_update_missing_task(sqlite_store: TaskStore) -> None:
    with pytest.raises(TaskNotFoundError):
        sqlite_store.update_task("missing", title="x")


def test_get_missing_task(sqlite_store: TaskStore) -> None:
    with pytest.raises(TaskNotFoundError) as excinfo:
        sqlite_store.get_task("missing")

    assert excinfo.value.task_id == "missing"


def test_update_reminder_settings_keeps_sent_log(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Release", deadline=DEADLINE)
    sent_at = datetime(2026, 4, 30, 9, 30, tzinfo=UTC)
    sqlite_store.persist_reminder_log(
        created.id, [ReminderRecord(key="1_day", sent_at=sent_at)], sent_at
    )

    updated = sqlite_store.update_reminder_settings(
        created.id,
        {"enabled": True, "intervals": [{"value": 30, "unit": "minute", "enabled": True}]},
    )

    assert [(i.value, i.unit) for i in updated.reminder_settings.intervals] == [(30, "minute")]
    assert [r.key for r in sqlite_store.get_task(created.id).reminders] == ["1_day"]


def test_update_reminder_settings_rejects_unknown_unit(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Release", deadline=DEADLINE)

    with pytest.raises(ReminderConfigError):
        sqlite_store.update_reminder_settings(
            created.id, {"intervals": [{"value": 2, "unit": "fortnight"}]}
        )

    stored = sqlite_store.get_task(created.id)
    assert [i.unit for i in stored.reminder_settings.intervals] == ["day", "hour", "minute"]


def test_persist_reminder_log(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Release", deadline=DEADLINE)
    sent_at = datetime(2026, 5, 1, 7, 45, tzinfo=UTC)

    sqlite_store.persist_reminder_log(
        created.id,
        [
            ReminderRecord(key="1_day", sent_at=sent_at - timedelta(days=1)),
            ReminderRecord(key="2_hour", sent_at=sent_at),
        ],
        sent_at,
    )

    task = sqlite_store.get_task(created.id)
    assert [r.key for r in task.reminders] == ["1_day", "2_hour"]
    assert task.reminders[1].sent_at == sent_at
    assert task.updated_at == sent_at


def test_persist_reminder_log_missing_task(sqlite_store: TaskStore) -> None:
    with pytest.raises(TaskNotFoundError):
        sqlite_store.persist_reminder_log("missing", [], datetime.now(tz=UTC))


def test_delete_task(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Temporary")

    assert sqlite_store.delete_task(created.id) is True
    assert sqlite_store.delete_task(created.id) is False
    with pytest.raises(TaskNotFoundError):
        sqlite_store.get_task(created.id)


def test_data_survives_reopen(tmp_path) -> None:
    url = f"sqlite:///{(tmp_path / 'reopen.sqlite3').as_posix()}"
    store = TaskStore(url)
    created = store.create_task("Persistent", deadline=DEADLINE)
    store.close()

    reopened = TaskStore(url)
    try:
        assert reopened.get_task(created.id).title == "Persistent"
    finally:
        reopened.close()


def test_persist_reminder_log_merges_by_key(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Release", deadline=DEADLINE)
    first = datetime(2026, 4, 30, 9, 30, tzinfo=UTC)
    second = datetime(2026, 5, 1, 7, 30, tzinfo=UTC)
    sqlite_store.persist_reminder_log(
        created.id,
        [ReminderRecord(key="1_day", sent_at=first), ReminderRecord(key="2_hour", sent_at=second)],
        second,
    )

    # An older snapshot holding fewer entries must not shrink the log.
    sqlite_store.persist_reminder_log(
        created.id, [ReminderRecord(key="1_day", sent_at=second)], second + timedelta(hours=1)
    )

    task = sqlite_store.get_task(created.id)
    assert [r.key for r in task.reminders] == ["1_day", "2_hour"]
    assert task.reminders[0].sent_at == first
    assert task.updated_at == second


class ReentrantSqliteStore(TaskStore):
    """Runs a second monitor tick before the first log write reaches the database."""

    monitor: DeadlineMonitor | None = None
    nested_sent: list = []

    def persist_reminder_log(self, task_id, reminders, updated_at) -> None:
        monitor, self.monitor = self.monitor, None
        if monitor is not None:
            self.nested_sent = monitor.check_and_send_reminders()
        super().persist_reminder_log(task_id, reminders, updated_at)


def test_overlapping_ticks_keep_every_sent_key(tmp_path) -> None:
    store = ReentrantSqliteStore(f"sqlite:///{(tmp_path / 'overlap.sqlite3').as_posix()}")
    try:
        created = store.create_task("Standup notes", deadline=BASE_NOW + timedelta(minutes=30))
        notifier = RecordingNotifier()
        monitor = DeadlineMonitor(store, notifier, clock=FakeClock())
        store.monitor = monitor

        outer = monitor.check_and_send_reminders()

        assert [n.data["reminder_key"] for n in outer] == ["1_day"]
        assert [n.data["reminder_key"] for n in store.nested_sent] == ["2_hour"]
        assert len(notifier.sent) == 2
        assert [r.key for r in store.get_task(created.id).reminders] == ["1_day", "2_hour"]
    finally:
        store.close()


# ---------------------------------------------------------------------------
# Search and bulk operations


def test_search_tasks(sqlite_store: TaskStore) -> None:
    invoice = sqlite_store.create_task("Send Invoice", tags=["billing"])
    sqlite_store.create_task("Water plants", "the invoice folder is on the desk", status="completed")
    tagged = sqlite_store.create_task("Call accountant", tags=["Invoices"], priority="high")
    sqlite_store.create_task("Unrelated")

    assert [t.id for t in sqlite_store.search_tasks("INVOICE", status="pending")] == [
        invoice.id,
        tagged.id,
    ]
    assert [t.id for t in sqlite_store.search_tasks("invoice", priority="high")] == [tagged.id]
    assert len(sqlite_store.search_tasks("")) == 4
    assert sqlite_store.search_tasks("nothing like this") == []


def test_toggle_task_status_cycles(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Cycle")

    statuses = [sqlite_store.toggle_task_status(created.id).status for _ in range(3)]

    assert statuses == ["in-progress", "completed", "pending"]


def test_complete_task(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Finish me", status="in-progress")

    assert sqlite_store.complete_task(created.id).status == "completed"
    assert sqlite_store.get_task(created.id).status == "completed"


def test_bulk_update_reports_each_task(sqlite_store: TaskStore) -> None:
    first = sqlite_store.create_task("One")
    second = sqlite_store.create_task("Two")

    results = sqlite_store.bulk_update_tasks([first.id, "missing", second.id], priority="high")

    assert [(r.task_id, r.success) for r in results] == [
        (first.id, True),
        ("missing", False),
        (second.id, True),
    ]
    assert "missing" in results[1].error
    assert {t.priority for t in sqlite_store.get_all_tasks()} == {"high"}


def test_bulk_update_rejects_unknown_field_per_task(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("One")

    (result,) = sqlite_store.bulk_update_tasks([created.id], reminders=[])

    assert result.success is False
    assert "reminders" in result.error


def test_bulk_delete(sqlite_store: TaskStore) -> None:
    first = sqlite_store.create_task("One")
    kept = sqlite_store.create_task("Two")

    results = sqlite_store.bulk_delete_tasks([first.id, "missing"])

    assert [(r.task_id, r.success) for r in results] == [(first.id, True), ("missing", False)]
    assert [t.id for t in sqlite_store.get_all_tasks()] == [kept.id]


def test_import_tasks(sqlite_store: TaskStore) -> None:
    existing = sqlite_store.create_task("Already here")
    sent_at = datetime(2026, 4, 30, 9, 30, tzinfo=UTC)

    result = sqlite_store.import_tasks(
        [
            {"id": existing.id, "title": "Duplicate"},
            {
                "id": "imported-1",
                "title": "Migrated",
                "deadline": DEADLINE,
                "reminders": [{"key": "1_day", "sent_at": sent_at.isoformat()}],
            },
            {"title": ""},
            {"id": "imported-2", "title": "Orphan", "group_id": "no-such-group"},
        ]
    )

    assert result.model_dump() == {"total": 4, "imported": 1, "skipped": 1, "failed": 2}
    migrated = sqlite_store.get_task("imported-1")
    assert migrated.deadline == datetime(2026, 5, 1, 9, 30, tzinfo=UTC)
    assert [r.key for r in migrated.reminders] == ["1_day"]
    assert sqlite_store.get_task(existing.id).title == "Already here"
    with pytest.raises(TaskNotFoundError):
        sqlite_store.get_task("imported-2")


# ---------------------------------------------------------------------------
# Groups


def test_create_and_list_groups(sqlite_store: TaskStore) -> None:
    backend = sqlite_store.create_group("Backend", "API work", created_by="42", color="#10b981")
    archive = sqlite_store.create_group("Archive")
    sqlite_store.update_group(archive.id, is_active=False)

    assert backend.members == ["42"]
    assert backend.admins == ["42"]
    assert sqlite_store.get_group(backend.id).color == "#10b981"
    assert [g.id for g in sqlite_store.get_all_groups()] == [backend.id, archive.id]
    assert [g.id for g in sqlite_store.get_all_groups(active_only=True)] == [backend.id]


def test_create_group_rejects_bad_color(sqlite_store: TaskStore) -> None:
    with pytest.raises(ValidationError):
        sqlite_store.create_group("Frontend", color="blue")


def test_update_group_rejects_unknown_field(sqlite_store: TaskStore) -> None:
    group = sqlite_store.create_group("Ops")

    with pytest.raises(ValueError):
        sqlite_store.update_group(group.id, members=["1"])


def test_tasks_belong_to_groups(sqlite_store: TaskStore) -> None:
    group = sqlite_store.create_group("Ops")
    inside = sqlite_store.create_task("Rotate keys", group_id=group.id)
    sqlite_store.create_task("Elsewhere")

    assert [t.id for t in sqlite_store.get_tasks_by_group(group.id)] == [inside.id]
    assert [t.id for t in sqlite_store.search_tasks(group_id=group.id)] == [inside.id]


def test_unknown_group_is_rejected(sqlite_store: TaskStore) -> None:
    created = sqlite_store.create_task("Loose")

    with pytest.raises(GroupNotFoundError):
        sqlite_store.create_task("Lost", group_id="missing")
    with pytest.raises(GroupNotFoundError):
        sqlite_store.update_task(created.id, group_id="missing")
    with pytest.raises(GroupNotFoundError) as excinfo:
        sqlite_store.get_tasks_by_group("missing")
    assert excinfo.value.group_id == "missing"


def test_delete_group_blocked_while_tasks_exist(sqlite_store: TaskStore) -> None:
    group = sqlite_store.create_group("Ops")
    task = sqlite_store.create_task("Rotate keys", group_id=group.id)

    with pytest.raises(ValueError):
        sqlite_store.delete_group(group.id)

    sqlite_store.update_task(task.id, group_id=None)
    assert sqlite_store.delete_group(group.id) is True
    assert sqlite_store.delete_group(group.id) is False


def test_group_membership_rules(sqlite_store: TaskStore) -> None:
    group = sqlite_store.create_group("Ops", created_by="owner")

    group = sqlite_store.add_group_member(group.id, "alice")
    group = sqlite_store.add_group_member(group.id, "bob", admin=True)
    assert group.members == ["owner", "alice", "bob"]
    assert group.admins == ["owner", "bob"]

    with pytest.raises(ValueError):
        sqlite_store.add_group_member(group.id, "alice")
    with pytest.raises(ValueError):
        sqlite_store.remove_group_member(group.id, "owner")
    with pytest.raises(ValueError):
        sqlite_store.set_group_admin(group.id, "owner", False)
    with pytest.raises(ValueError):
        sqlite_store.set_group_admin(group.id, "carol")

    group = sqlite_store.set_group_admin(group.id, "alice")
    assert group.admins == ["owner", "bob", "alice"]
    group = sqlite_store.remove_group_member(group.id, "bob")
    assert group.members == ["owner", "alice"]
    assert group.admins == ["owner", "alice"]
    assert sqlite_store.get_group(group.id).admins == ["owner", "alice"]


def test_group_member_change_on_missing_group(sqlite_store: TaskStore) -> None:
    with pytest.raises(GroupNotFoundError):
        sqlite_store.add_group_member("missing", "alice")
