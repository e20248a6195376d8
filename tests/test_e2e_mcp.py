"""Happy-path end-to-end tests against the running MCP server.

The server is started over stdio and delivers reminders to a real Telegram
chat, so TELEGRAM_BOT__API_TOKEN and TELEGRAM_BOT__CHAT_ID must be set in the
environment or .env. Tasks go to a throwaway SQLite database.
"""

from __future__ import annotations

import json
import os
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from dotenv import load_dotenv
from fastmcp.exceptions import ToolError

from task_deadline_mcp.telegram_client import TelegramBotClient

from tests.client import SyncMCPClient

pytestmark = pytest.mark.e2e


@pytest.fixture(scope="module")
def mcp_client(tmp_path_factory):
    load_dotenv()

    db_path = tmp_path_factory.mktemp("e2e") / "tasks.sqlite3"
    env = dict(os.environ)
    env["TASK_DEADLINE_MCP__DATABASE_URL"] = f"sqlite:///{db_path.as_posix()}"
    with SyncMCPClient(env=env) as client:
        yield client


def _unwrap(result):
    structured = getattr(result, "structured_content", None) or getattr(
        result, "structuredContent", None
    )
    if structured is not None:
        return structured
    for item in getattr(result, "content", []) or []:
        text = getattr(item, "text", None)
        if text:
            return json.loads(text)
    return result


def _create(client: SyncMCPClient, **body) -> dict:
    body.setdefault("title", f"E2E {uuid.uuid4().hex[:8]}")
    return _unwrap(client.call_tool("create_task", {"body": body}))["task"]


def test_bot_token_is_valid() -> None:
    load_dotenv()
    with TelegramBotClient() as bot:
        assert bot.get_me()["is_bot"] is True


def test_due_reminder_is_delivered_once(mcp_client: SyncMCPClient) -> None:
    deadline = (datetime.now(tz=UTC) + timedelta(minutes=90)).isoformat()
    task = _create(
        mcp_client,
        deadline=deadline,
        reminder_settings={"intervals": [{"value": 2, "unit": "hour", "enabled": True}]},
    )

    first = _unwrap(mcp_client.call_tool("check_reminders", {}))["sent"]
    second = _unwrap(mcp_client.call_tool("check_reminders", {}))["sent"]

    assert [(n["task_id"], n["data"]["reminder_key"]) for n in first] == [(task["id"], "2_hour")]
    assert all(n["task_id"] != task["id"] for n in second)


def test_manual_reminder(mcp_client: SyncMCPClient) -> None:
    task = _create(
        mcp_client, deadline=(datetime.now(tz=UTC) + timedelta(days=2)).isoformat()
    )

    result = _unwrap(
        mcp_client.call_tool(
            "send_manual_reminder",
            {"body": {"task_id": task["id"], "message": "E2E manual reminder"}},
        )
    )

    assert result["notification"]["type"] == "manual_reminder"


def test_manual_reminder_requires_deadline(mcp_client: SyncMCPClient) -> None:
    task = _create(mcp_client)

    with pytest.raises(ToolError):
        mcp_client.call_tool("send_manual_reminder", {"body": {"task_id": task["id"]}})
