import asyncio
import logging
import time
from typing import List, Optional

import httpx

from common.cards import build_task_card, decode_card
from common.config import Settings, settings as default_settings
from common.models import (
    Task, ChannelMessage, ChannelState, PostReport, ClearReport, CleanupReport
)
from common.slack import SlackAdapter, SlackApiError

logger = logging.getLogger(__name__)


class ChannelStateReader:
    def __init__(self, slack: SlackAdapter, config: Settings = default_settings):
        self.slack = slack
        self.config = config

    async def list_messages(self) -> List[ChannelMessage]:
        payload = await self.slack.history(self.config.SLACK_CHANNEL_ID, limit=self.config.CHANNEL_HISTORY_LIMIT)
        raw_messages = payload.get("messages") or []
        return [ChannelMessage.from_slack(m) for m in raw_messages if isinstance(m, dict)]

    async def current_state(self) -> ChannelState:
        messages = await self.list_messages()
        state = ChannelState()
        for message in messages:
            if message.is_bot:
                state.bot_message_count += 1
            card = decode_card(message)
            if card is None:
                continue
            state.count_by_bucket[card.recipient] = state.count(card.recipient) + 1
            if card.task_id:
                state.posted_task_ids.add(card.task_id)
        return state


class ChannelWriter:
    def __init__(self, slack: SlackAdapter, config: Settings = default_settings,
                 reader: Optional[ChannelStateReader] = None):
        self.slack = slack
        self.config = config
        self.reader = reader or ChannelStateReader(slack, config)

    @property
    def channel(self) -> str:
        return self.config.SLACK_CHANNEL_ID

    async def post_task(self, task: Task) -> None:
        card = build_task_card(task)
        await self.slack.post_message(self.channel, card["text"], card["blocks"])
        logger.info("Posted task %s (%s) for %s", task.id, task.title, task.label)

    async def post_tasks(self, tasks: List[Task], report: Optional[PostReport] = None) -> PostReport:
        """Post in order; with `report`, results are appended and pacing continues from it."""
        report = report if report is not None else PostReport()
        for task in tasks:
            if report.posted or report.failed:
                await asyncio.sleep(self.config.SLACK_POST_DELAY_SECONDS)
            try:
                await self.post_task(task)
            except (SlackApiError, httpx.HTTPError) as exc:
                logger.error("Failed to post task %s (%s): %s", task.id, task.title, exc)
                report.failed.append(task)
                continue
            report.posted.append(task)
        return report

    async def clear_bot_messages(self) -> ClearReport:
        report = ClearReport()
        try:
            messages = await self.reader.list_messages()
        except (SlackApiError, httpx.HTTPError) as exc:
            logger.error("Could not list channel history for clearing: %s", exc)
            raise
        report.listed = len(messages)

        bot_messages = [m for m in messages if m.is_bot]
        for idx, message in enumerate(bot_messages):
            if idx:
                await asyncio.sleep(self.config.SLACK_DELETE_DELAY_SECONDS)
            try:
                await self.slack.delete_message(self.channel, message.ts)
            except (SlackApiError, httpx.HTTPError) as exc:
                # Old messages can be undeletable; keep going.
                logger.warning("Could not delete message %s: %s", message.ts, exc)
                report.failed += 1
                continue
            report.deleted += 1
        logger.info("Deleted %s of %s bot messages", report.deleted, len(bot_messages))
        return report

    async def _list_all_messages(self) -> List[ChannelMessage]:
        messages: List[ChannelMessage] = []
        cursor: Optional[str] = None
        for page in range(self.config.CLEANUP_MAX_PAGES):
            payload = await self.slack.history(self.channel, limit=self.config.CLEANUP_PAGE_SIZE, cursor=cursor)
            batch = [ChannelMessage.from_slack(m) for m in payload.get("messages") or [] if isinstance(m, dict)]
            messages.extend(batch)
            logger.info("Fetched history page %s with %s messages", page + 1, len(batch))
            cursor = (payload.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        return messages

    async def cleanup(self, now: Optional[float] = None) -> CleanupReport:
        """Delete everything except human messages newer than the grace window."""
        current = time.time() if now is None else now
        grace_seconds = self.config.CLEANUP_HUMAN_GRACE_HOURS * 3600
        messages = await self._list_all_messages()
        report = CleanupReport(total_messages=len(messages))

        first = True
        for message in messages:
            try:
                age = current - float(message.ts)
            except ValueError:
                age = 0.0
            if not message.is_bot and age < grace_seconds:
                report.skipped += 1
                continue
            if not first:
                await asyncio.sleep(self.config.CLEANUP_DELETE_DELAY_SECONDS)
            first = False
            try:
                await self.slack.delete_message(self.channel, message.ts)
            except (SlackApiError, httpx.HTTPError) as exc:
                logger.warning("Failed to delete %s: %s", message.ts, exc)
                report.failed += 1
                continue
            report.deleted += 1
        logger.info(
            "Cleanup complete: deleted=%s failed=%s skipped=%s",
            report.deleted, report.failed, report.skipped,
        )
        return report
