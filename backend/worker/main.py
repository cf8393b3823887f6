import asyncio
import logging
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import redis.asyncio as redis

from common.config import Settings, settings
from common.channel import ChannelWriter
from common.lease import ChannelLease
from common.notion import notion_adapter
from common.slack import slack_adapter
from common.sync import TaskSync

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("worker")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

DEFAULT_QUEUE = "default_queue"
DLQ = "dead_letter_queue"
SCHEDULE_KEY_PREFIX = "schedule"
SCHEDULER_TICK_SECONDS = 30
CLEANUP_WINDOW = timedelta(hours=1)

TOPIC_SYNC = "sync.channel"
TOPIC_CLEANUP = "cleanup.channel"


def build_task_sync() -> TaskSync:
    return TaskSync(notion_adapter, slack_adapter, settings, lease=ChannelLease(redis_client, settings))


async def handle_channel_sync(job_id: str, payload: dict):
    summary = await build_task_sync().full_resync()
    logger.info(
        f"Scheduled sync {job_id} posted {len(summary.posted)} tasks "
        f"(failed={summary.failed_posts}, deleted={summary.messages_deleted})"
    )

async def handle_channel_cleanup(job_id: str, payload: dict):
    writer = ChannelWriter(slack_adapter, settings)
    async with ChannelLease(redis_client, settings).hold():
        report = await writer.cleanup()
    logger.info(f"Cleanup {job_id}: deleted={report.deleted} failed={report.failed} skipped={report.skipped}")

async def process_job(job_data: dict):
    topic = job_data.get("topic")
    payload = job_data.get("payload", {})
    job_id = job_data.get("job_id")
    attempt = job_data.get("attempt", 1)
    max_attempts = settings.WORKER_MAX_ATTEMPTS

    logger.info(f"Processing job: {topic} (id: {job_id}, attempt: {attempt})")

    try:
        if topic == TOPIC_SYNC:
            await handle_channel_sync(job_id, payload)
        elif topic == TOPIC_CLEANUP:
            await handle_channel_cleanup(job_id, payload)
        else:
            logger.warning(f"Unknown topic: {topic}")
            return
    except Exception as e:
        logger.error(f"Job failed (attempt {attempt}): {e}")
        if attempt < max_attempts:
            job_data["attempt"] = attempt + 1
            wait_time = min(2 ** attempt, 60)
            logger.info(f"Retrying in {wait_time}s...")
            await asyncio.sleep(wait_time)
            await redis_client.rpush(DEFAULT_QUEUE, json.dumps(job_data))
        else:
            logger.error(f"Job exceeded max attempts, moving to DLQ: {job_id}")
            await redis_client.rpush(DLQ, json.dumps(job_data))

async def enqueue_job(topic: str, payload: Optional[dict] = None) -> str:
    job_id = str(uuid.uuid4())
    await redis_client.rpush(
        DEFAULT_QUEUE,
        json.dumps({"job_id": job_id, "topic": topic, "payload": payload or {}}),
    )
    return job_id


def _schedule_zone(config: Settings):
    try:
        return ZoneInfo(config.SYNC_TIMEZONE)
    except ZoneInfoNotFoundError:
        return timezone.utc


def _parse_clock(value: Optional[str]) -> Optional[Tuple[int, int]]:
    if not value:
        return None
    try:
        hour, minute = value.strip().split(":", 1)
        parsed = (int(hour), int(minute))
    except ValueError:
        logger.warning(f"Ignoring invalid CLEANUP_SCHEDULE_TIME: {value}")
        return None
    if not (0 <= parsed[0] <= 23 and 0 <= parsed[1] <= 59):
        return None
    return parsed


def due_schedule_slots(now: datetime, config: Settings = settings) -> List[Tuple[str, str]]:
    """
    Returns (topic, slot_key) pairs due at `now`.
    Each scheduled hour is one sync slot; the cleanup slot is open for an hour after its start time.
    """
    local = now.astimezone(_schedule_zone(config))
    slots: List[Tuple[str, str]] = []
    if local.hour in config.schedule_hours:
        slots.append((TOPIC_SYNC, f"{TOPIC_SYNC}:{local.strftime('%Y-%m-%dT%H')}"))

    clock = _parse_clock(config.CLEANUP_SCHEDULE_TIME)
    if clock:
        start = local.replace(hour=clock[0], minute=clock[1], second=0, microsecond=0)
        if start <= local < start + CLEANUP_WINDOW:
            slots.append((TOPIC_CLEANUP, f"{TOPIC_CLEANUP}:{local.strftime('%Y-%m-%d')}"))
    return slots


async def scheduler_tick(now: Optional[datetime] = None) -> List[str]:
    enqueued = []
    for topic, slot_key in due_schedule_slots(now or utc_now()):
        # One job per slot, even with several workers running.
        claimed = await redis_client.set(f"{SCHEDULE_KEY_PREFIX}:{slot_key}", "1", nx=True, ex=int(timedelta(days=2).total_seconds()))
        if not claimed:
            continue
        job_id = await enqueue_job(topic)
        logger.info(f"Scheduled {topic} for slot {slot_key} (id: {job_id})")
        enqueued.append(job_id)
    return enqueued

async def scheduler_loop():
    logger.info(f"Scheduler started: sync hours {settings.SYNC_SCHEDULE_HOURS} ({settings.SYNC_TIMEZONE})")
    while True:
        try:
            await scheduler_tick()
        except Exception as e:
            logger.error(f"Error in scheduler loop: {e}")
        await asyncio.sleep(SCHEDULER_TICK_SECONDS)

async def worker_loop():
    logger.info("Worker started, listening for jobs...")
    while True:
        try:
            result = await redis_client.blpop(DEFAULT_QUEUE, timeout=5)
            if result:
                _, raw_data = result
                job_data = json.loads(raw_data)
                await process_job(job_data)
        except Exception as e:
            logger.error(f"Error in worker loop: {e}")
            await asyncio.sleep(5)

async def main():
    await asyncio.gather(worker_loop(), scheduler_loop())

if __name__ == "__main__":
    asyncio.run(main())
