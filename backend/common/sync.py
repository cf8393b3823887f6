import logging
from contextlib import nullcontext
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from common.channel import ChannelStateReader, ChannelWriter
from common.config import Settings, settings as default_settings
from common.lease import ChannelLease
from common.models import Task, Recipient, PostReport, SyncSummary, RECIPIENT_ORDER
from common.notion import NotionAdapter
from common.reconcile import (
    allocate_full, allocate_backfill, allocate_urgent_top_up, group_by_recipient, take_from_bucket,
)
from common.slack import SlackAdapter
from common.tasks import normalize_pages

logger = logging.getLogger(__name__)


def local_today(config: Settings = default_settings) -> date:
    tz_name = (config.APP_TIMEZONE or "").strip() or "UTC"
    try:
        tz = ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        tz = timezone.utc
    return datetime.now(tz).date()


class TaskSync:
    """Reconciles the channel against the open tasks in the source database."""

    def __init__(
        self,
        notion: NotionAdapter,
        slack: SlackAdapter,
        config: Settings = default_settings,
        lease: Optional[ChannelLease] = None,
    ):
        self.notion = notion
        self.config = config
        self.reader = ChannelStateReader(slack, config)
        self.writer = ChannelWriter(slack, config, reader=self.reader)
        self.lease = lease

    def _hold(self):
        if self.lease is None:
            return nullcontext()
        return self.lease.hold()

    async def collect_open_tasks(self, today: date) -> List[Task]:
        horizon = self.config.SYNC_HORIZON_DAYS
        window = await self.notion.fetch_open_tasks(today, horizon)
        return normalize_pages(window.pages(), today, self.config, horizon_days=horizon)

    async def full_resync(self, today: Optional[date] = None) -> SyncSummary:
        today = today or local_today(self.config)
        async with self._hold():
            # Source errors propagate before anything on the channel is touched.
            tasks = await self.collect_open_tasks(today)
            _log_distribution(tasks)
            planned = allocate_full(
                tasks,
                per_recipient_cap=self.config.MAX_TASKS_PER_RECIPIENT,
                global_cap=self.config.MAX_POSTED_TASKS,
            )
            logger.info("Planned %s cards before posting", len(planned))

            # A listing failure propagates; nothing is posted over uncleared cards.
            cleared = await self.writer.clear_bot_messages()

            # The global budget only shrinks by posts that succeeded.
            buckets = group_by_recipient(tasks)
            report = PostReport()
            for recipient in RECIPIENT_ORDER:
                picked = take_from_bucket(
                    buckets[recipient],
                    recipient,
                    self.config.MAX_POSTED_TASKS - len(report.posted),
                    per_recipient_cap=self.config.MAX_TASKS_PER_RECIPIENT,
                )
                await self.writer.post_tasks(picked, report=report)

        summary = SyncSummary(
            posted=report.posted,
            failed_posts=len(report.failed),
            messages_deleted=cleared.deleted,
            candidates=len(tasks),
        )
        logger.info(
            "Resync complete: posted=%s failed=%s deleted=%s by_recipient=%s",
            len(summary.posted), summary.failed_posts, summary.messages_deleted, summary.tasks_by_recipient,
        )
        return summary

    async def backfill(self, seed: Optional[Recipient], today: Optional[date] = None,
                       exclude_ids: Iterable[str] = ()) -> Optional[Task]:
        today = today or local_today(self.config)
        excluded = set(exclude_ids)
        async with self._hold():
            tasks = [t for t in await self.collect_open_tasks(today) if t.id not in excluded]
            state = await self.reader.current_state()
            task = allocate_backfill(
                tasks,
                state,
                seed,
                per_recipient_cap=self.config.MAX_TASKS_PER_RECIPIENT,
                global_cap=self.config.MAX_POSTED_TASKS,
            )
            if task is None:
                logger.info("Backfill found nothing to post (seed=%s)", seed.value if seed else None)
                return None
            report = await self.writer.post_tasks([task])
        if not report.posted:
            return None
        logger.info("Backfilled %s (%s) for %s", task.id, task.title, task.label)
        return task

    async def top_up_urgent(self, today: Optional[date] = None) -> SyncSummary:
        today = today or local_today(self.config)
        async with self._hold():
            window = await self.notion.fetch_urgent_tasks(today)
            tasks = normalize_pages(window.pages(), today, self.config)
            state = await self.reader.current_state()
            allocation = allocate_urgent_top_up(
                tasks,
                state,
                per_recipient_cap=self.config.MAX_TASKS_PER_RECIPIENT,
                global_cap=self.config.MAX_POSTED_TASKS,
            )
            if not allocation:
                logger.info("No new urgent tasks to post")
                return SyncSummary(candidates=len(tasks))
            report = await self.writer.post_tasks(allocation)
        logger.info("Posted %s new urgent tasks", len(report.posted))
        return SyncSummary(posted=report.posted, failed_posts=len(report.failed), candidates=len(tasks))


def _log_distribution(tasks: List[Task]) -> None:
    buckets = group_by_recipient(tasks)
    for recipient in RECIPIENT_ORDER:
        logger.info("%s: %s candidate tasks", recipient.value, len(buckets[recipient]))
