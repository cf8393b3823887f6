import asyncio
from datetime import date
from unittest.mock import AsyncMock, patch

import pytest

from common.cards import build_task_card
from common.channel import ChannelStateReader, ChannelWriter
from common.models import Recipient, Task, Urgency
from common.slack import SlackApiError


def _task(task_id, recipient=Recipient.ROB, label=None):
    return Task(id=task_id, title=f"Task {task_id}", due_date=date(2025, 6, 9), recipient=recipient,
                label=label or recipient.value, urgency=Urgency.OVERDUE)


def _post_card(fake_slack, task):
    card = build_task_card(task)
    return fake_slack.add_message(card["text"], bot=True, blocks=card["blocks"])


def test_state_reader_counts_cards_by_bucket(fake_slack, test_settings):
    _post_card(fake_slack, _task("r1"))
    _post_card(fake_slack, _task("r2"))
    _post_card(fake_slack, _task("s1", Recipient.SAM))
    _post_card(fake_slack, _task("j1", Recipient.UNASSIGNED, label="JANE"))
    fake_slack.add_message("Daily standup at 10", bot=False)
    fake_slack.add_message("Bot notice without blocks", bot=True)

    state = asyncio.run(ChannelStateReader(fake_slack, test_settings).current_state())

    assert state.posted_task_ids == {"r1", "r2", "s1", "j1"}
    assert state.count(Recipient.ROB) == 2
    assert state.count(Recipient.SAM) == 1
    assert state.count(Recipient.ANNA) == 0
    assert state.count(Recipient.UNASSIGNED) == 1
    assert state.total_posted == 4
    assert state.bot_message_count == 5


def test_state_reader_ignores_human_messages_that_look_like_cards(fake_slack, test_settings):
    card = build_task_card(_task("r1"))
    fake_slack.add_message(card["text"], bot=False, blocks=card["blocks"])
    state = asyncio.run(ChannelStateReader(fake_slack, test_settings).current_state())
    assert state.total_posted == 0
    assert state.posted_task_ids == set()


def test_post_tasks_skips_failures_and_keeps_going(fake_slack, test_settings):
    fake_slack.fail_post_task_ids = {"t2"}
    fake_slack.rate_limit_task_ids = {"t3"}
    writer = ChannelWriter(fake_slack, test_settings)

    report = asyncio.run(writer.post_tasks([_task("t1"), _task("t2"), _task("t3"), _task("t4")]))

    assert [t.id for t in report.posted] == ["t1", "t4"]
    assert [t.id for t in report.failed] == ["t2", "t3"]
    assert fake_slack.card_task_ids() == ["t1", "t4"]


def test_post_tasks_paces_between_posts(fake_slack, test_settings):
    config = test_settings.model_copy(update={"SLACK_POST_DELAY_SECONDS": 0.1})
    writer = ChannelWriter(fake_slack, config)
    with patch("common.channel.asyncio.sleep", new=AsyncMock()) as sleep:
        asyncio.run(writer.post_tasks([_task("t1"), _task("t2"), _task("t3")]))
    assert sleep.await_count == 2
    sleep.assert_awaited_with(0.1)


def test_clear_bot_messages_tolerates_delete_failures(fake_slack, test_settings):
    kept = _post_card(fake_slack, _task("old"))
    _post_card(fake_slack, _task("new"))
    fake_slack.add_message("human note", bot=False)
    fake_slack.fail_delete_ts = {kept["ts"]}

    report = asyncio.run(ChannelWriter(fake_slack, test_settings).clear_bot_messages())

    assert report.listed == 3
    assert report.deleted == 1
    assert report.failed == 1
    assert fake_slack.card_task_ids() == ["old"]
    assert any(m["text"] == "human note" for m in fake_slack.messages)


def test_clear_bot_messages_when_history_unavailable(fake_slack, test_settings):
    _post_card(fake_slack, _task("r1"))
    fake_slack.fail_history = True
    with pytest.raises(SlackApiError):
        asyncio.run(ChannelWriter(fake_slack, test_settings).clear_bot_messages())
    assert fake_slack.card_task_ids() == ["r1"]


def test_cleanup_keeps_recent_human_messages(fake_slack, test_settings):
    now = 1_750_000_000.0
    fake_slack.add_message("old human", ts=f"{now - 30 * 3600:.6f}")
    fake_slack.add_message("recent human", ts=f"{now - 2 * 3600:.6f}")
    fake_slack.add_message("bot card", bot=True, blocks=[], ts=f"{now - 60:.6f}")

    report = asyncio.run(ChannelWriter(fake_slack, test_settings).cleanup(now=now))

    assert report.total_messages == 3
    assert report.deleted == 2
    assert report.skipped == 1
    assert report.failed == 0
    assert [m["text"] for m in fake_slack.messages] == ["recent human"]


def test_cleanup_walks_history_pages(fake_slack, test_settings):
    config = test_settings.model_copy(update={"CLEANUP_PAGE_SIZE": 2, "CLEANUP_MAX_PAGES": 2})
    for i in range(5):
        fake_slack.add_message(f"bot {i}", bot=True, ts=f"{1_700_000_000 + i}.000000")

    report = asyncio.run(ChannelWriter(fake_slack, config).cleanup(now=1_750_000_000.0))

    assert report.total_messages == 4
    assert report.deleted == 4
    assert len(fake_slack.messages) == 1
