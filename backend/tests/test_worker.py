import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from common.models import SyncSummary
from worker.main import (
    DEFAULT_QUEUE, DLQ, TOPIC_CLEANUP, TOPIC_SYNC, due_schedule_slots, process_job, scheduler_tick,
)


def test_process_job_dispatches_sync():
    task_sync = AsyncMock()
    task_sync.full_resync.return_value = SyncSummary()

    async def _run():
        with patch("worker.main.build_task_sync", return_value=task_sync):
            await process_job({"job_id": "j1", "topic": "sync.channel", "payload": {}})

    asyncio.run(_run())
    task_sync.full_resync.assert_awaited_once()


def test_urgent_top_up_is_not_a_worker_topic():
    # Urgent top-ups run inline in the webhook; the worker has no topic for them.
    task_sync = AsyncMock()
    fake_redis = AsyncMock()

    async def _run():
        with patch("worker.main.build_task_sync", return_value=task_sync), patch("worker.main.redis_client", fake_redis):
            await process_job({"job_id": "j2", "topic": "sync.urgent"})

    asyncio.run(_run())
    task_sync.top_up_urgent.assert_not_awaited()
    task_sync.full_resync.assert_not_awaited()
    fake_redis.rpush.assert_not_awaited()


def test_process_job_requeues_failed_attempt():
    fake_redis = AsyncMock()
    failing = AsyncMock(side_effect=RuntimeError("notion down"))

    async def _run():
        with patch("worker.main.redis_client", fake_redis), patch("worker.main.handle_channel_sync", failing), patch(
            "worker.main.asyncio.sleep", new=AsyncMock()
        ) as sleep:
            await process_job({"job_id": "j3", "topic": "sync.channel", "payload": {}, "attempt": 2})
            sleep.assert_awaited_once_with(4)

    asyncio.run(_run())
    queue, raw = fake_redis.rpush.await_args.args
    assert queue == DEFAULT_QUEUE
    assert json.loads(raw)["attempt"] == 3


def test_process_job_moves_exhausted_job_to_dlq():
    fake_redis = AsyncMock()
    failing = AsyncMock(side_effect=RuntimeError("notion down"))

    async def _run():
        with patch("worker.main.redis_client", fake_redis), patch("worker.main.handle_channel_sync", failing):
            await process_job({"job_id": "j4", "topic": "sync.channel", "payload": {}, "attempt": 5})

    asyncio.run(_run())
    queue, raw = fake_redis.rpush.await_args.args
    assert queue == DLQ
    assert json.loads(raw)["job_id"] == "j4"


def test_unknown_topic_is_dropped():
    fake_redis = AsyncMock()

    async def _run():
        with patch("worker.main.redis_client", fake_redis):
            await process_job({"job_id": "j5", "topic": "calendar.refresh"})

    asyncio.run(_run())
    fake_redis.rpush.assert_not_awaited()


def test_due_schedule_slots_follow_local_hours(test_settings):
    # 10:00 UTC is 06:00 in New York during daylight saving time.
    morning = datetime(2025, 6, 10, 10, 0, tzinfo=timezone.utc)
    night = datetime(2025, 6, 10, 4, 0, tzinfo=timezone.utc)
    assert due_schedule_slots(morning, test_settings) == [(TOPIC_SYNC, "sync.channel:2025-06-10T06")]
    assert due_schedule_slots(night, test_settings) == []


def test_due_schedule_slots_include_cleanup_window(test_settings):
    config = test_settings.model_copy(update={"CLEANUP_SCHEDULE_TIME": "23:30"})
    inside = datetime(2025, 6, 11, 3, 45, tzinfo=timezone.utc)   # 23:45 local
    outside = datetime(2025, 6, 11, 5, 0, tzinfo=timezone.utc)   # 01:00 local
    assert due_schedule_slots(inside, config) == [(TOPIC_CLEANUP, "cleanup.channel:2025-06-10")]
    assert due_schedule_slots(outside, config) == []


def test_scheduler_tick_enqueues_each_slot_once():
    fake_redis = AsyncMock()
    fake_redis.set.side_effect = [True, None]
    now = datetime(2025, 6, 10, 14, 5, tzinfo=timezone.utc)

    async def _run():
        with patch("worker.main.redis_client", fake_redis):
            first = await scheduler_tick(now)
            second = await scheduler_tick(now)
        return first, second

    first, second = asyncio.run(_run())
    assert len(first) == 1
    assert second == []
    assert fake_redis.set.await_args_list[0].args[0] == "schedule:sync.channel:2025-06-10T10"
    queue, raw = fake_redis.rpush.await_args.args
    assert queue == DEFAULT_QUEUE
    assert json.loads(raw)["topic"] == TOPIC_SYNC
