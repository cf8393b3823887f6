"""Stable shared fixtures for tests.

Design goal: avoid async fixture loop injection and keep test boundaries explicit.
Slack and Notion are replaced by small in-memory fakes that honour the same
method signatures as the real adapters.
"""
import os
from datetime import date
from unittest.mock import patch

import pytest

# Must be set before importing app modules.
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["NOTION_TOKEN"] = "test_notion_token"
os.environ["NOTION_DATABASE_ID"] = "db_test"
os.environ["SLACK_BOT_TOKEN"] = "xoxb-test"
os.environ["SLACK_SIGNING_SECRET"] = "test_signing_secret"
os.environ["SLACK_CHANNEL_ID"] = "C_TASKS"
os.environ.pop("APP_AUTH_BEARER_TOKENS", None)

from common.config import settings
from common.models import TaskWindow
from common.slack import SlackApiError, SlackRateLimitedError
from common.sync import TaskSync


def make_page(page_id, title="Task", due=None, assignee=None, done=False):
    properties = {
        "Name": {"type": "title", "title": [{"plain_text": title}] if title else []},
        "Due Date": {"type": "date", "date": {"start": due} if due else None},
        "Assigned To": {"type": "people", "people": [{"name": assignee}] if assignee else []},
        "Checkbox": {"type": "checkbox", "checkbox": done},
    }
    return {"id": page_id, "url": f"https://notion.so/{page_id}", "properties": properties}


def _page_due(page):
    value = ((page["properties"].get("Due Date") or {}).get("date") or {}).get("start")
    return date.fromisoformat(value[:10]) if value else None


class FakeNotion:
    def __init__(self, pages=None):
        self.pages = list(pages or [])
        self.done = set()
        self.fail_query = False
        self.fail_mark_done = False
        self.queries = []

    def _open(self):
        return [p for p in self.pages if p["id"] not in self.done and _page_due(p) is not None]

    def _sorted(self, pages):
        return sorted(pages, key=_page_due)

    async def fetch_urgent_tasks(self, today):
        self.queries.append(("urgent", today))
        if self.fail_query:
            raise RuntimeError("notion query failed")
        open_pages = self._open()
        return TaskWindow(
            overdue=self._sorted([p for p in open_pages if _page_due(p) < today]),
            due_today=self._sorted([p for p in open_pages if _page_due(p) == today]),
        )

    async def fetch_open_tasks(self, today, horizon_days):
        window = await self.fetch_urgent_tasks(today)
        limit = date.fromordinal(today.toordinal() + horizon_days)
        window.upcoming = self._sorted([p for p in self._open() if today < _page_due(p) <= limit])
        return window

    async def mark_done(self, page_id):
        if self.fail_mark_done:
            raise RuntimeError("notion update failed")
        self.done.add(page_id)
        return True


class FakeSlack:
    """Channel history is kept newest-first, like conversations.history."""

    def __init__(self):
        self.messages = []
        self.ephemerals = []
        self.calls = []
        self.fail_post_task_ids = set()
        self.rate_limit_task_ids = set()
        self.fail_delete_ts = set()
        self.fail_history = False
        self.fail_ephemeral = False
        self._next_ts = 1_749_500_000

    def _ts(self):
        self._next_ts += 1
        return f"{self._next_ts}.000100"

    def add_message(self, text, bot=False, blocks=None, ts=None):
        message = {"ts": ts or self._ts(), "text": text}
        if bot:
            message["bot_id"] = "B_BOT"
        if blocks is not None:
            message["blocks"] = blocks
        self.messages.insert(0, message)
        return message

    async def history(self, channel, limit=200, cursor=None):
        self.calls.append(("history", cursor))
        if self.fail_history:
            raise SlackApiError("conversations.history", "channel_not_found")
        start = int(cursor or 0)
        page = self.messages[start:start + limit]
        next_cursor = str(start + limit) if start + limit < len(self.messages) else ""
        return {"ok": True, "messages": [dict(m) for m in page], "response_metadata": {"next_cursor": next_cursor}}

    async def post_message(self, channel, text, blocks=None):
        task_id = None
        for block in blocks or []:
            accessory = block.get("accessory") or {}
            if accessory.get("value"):
                task_id = accessory["value"]
        self.calls.append(("post", task_id))
        if task_id in self.rate_limit_task_ids:
            raise SlackRateLimitedError("chat.postMessage", 1.0)
        if task_id in self.fail_post_task_ids:
            raise SlackApiError("chat.postMessage", "invalid_blocks")
        message = self.add_message(text, bot=True, blocks=blocks)
        return {"ok": True, "ts": message["ts"], "channel": channel}

    async def delete_message(self, channel, ts):
        self.calls.append(("delete", ts))
        if ts in self.fail_delete_ts:
            raise SlackApiError("chat.delete", "cant_delete_message")
        self.messages = [m for m in self.messages if m["ts"] != ts]
        return {"ok": True}

    async def post_ephemeral(self, channel, user, text):
        self.calls.append(("ephemeral", user))
        if self.fail_ephemeral:
            raise SlackApiError("chat.postEphemeral", "user_not_in_channel")
        self.ephemerals.append((channel, user, text))
        return {"ok": True}

    def card_task_ids(self):
        """Task ids on the channel in display order (oldest first)."""
        ids = []
        for message in reversed(self.messages):
            for block in message.get("blocks") or []:
                accessory = block.get("accessory") or {}
                if accessory.get("value"):
                    ids.append(accessory["value"])
        return ids

    def card_for(self, task_id):
        for message in self.messages:
            for block in message.get("blocks") or []:
                if (block.get("accessory") or {}).get("value") == task_id:
                    return message
        return None


@pytest.fixture
def test_settings():
    return settings.model_copy(
        update={
            "SLACK_POST_DELAY_SECONDS": 0,
            "SLACK_DELETE_DELAY_SECONDS": 0,
            "CLEANUP_DELETE_DELAY_SECONDS": 0,
            "CHANNEL_LEASE_ENABLED": False,
        }
    )


@pytest.fixture
def page():
    return make_page


@pytest.fixture
def fake_notion():
    return FakeNotion()


@pytest.fixture
def fake_slack():
    return FakeSlack()


@pytest.fixture
def task_sync(fake_notion, fake_slack, test_settings):
    return TaskSync(fake_notion, fake_slack, test_settings)


@pytest.fixture
def app_fakes(fake_notion, fake_slack, test_settings):
    from api.main import app

    with patch("api.main.notion_adapter", fake_notion), patch("api.main.slack_adapter", fake_slack), patch(
        "api.main.settings", test_settings
    ):
        yield app
