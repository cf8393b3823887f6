"""Mark-done transition for a single task card.

OPEN -> DONE is committed in the source database first. Everything after
that (removing the card, telling the user, backfilling the freed slot) is
best effort: a failure is logged and the done flag stays set.
"""
import logging

from common.cards import decode_recipient
from common.models import MarkDoneAction, CompletionResult
from common.notion import NotionAdapter
from common.slack import SlackAdapter
from common.sync import TaskSync

logger = logging.getLogger(__name__)

DONE_CONFIRMATION_TEXT = "✅ Task marked as complete in Notion!"
DONE_FAILURE_TEXT = "❌ Failed to mark task as done. Please try again or update in Notion directly."


async def _notify(slack: SlackAdapter, action: MarkDoneAction, text: str) -> bool:
    try:
        await slack.post_ephemeral(action.channel_id, action.user_id, text)
        return True
    except Exception as exc:
        logger.error("Failed to notify user %s about task %s: %s", action.user_id, action.task_id, exc)
        return False


async def complete_task(
    action: MarkDoneAction,
    notion: NotionAdapter,
    slack: SlackAdapter,
    sync: TaskSync,
) -> CompletionResult:
    logger.info("User %s marked task %s as done", action.user_id, action.task_id)

    # 1. Commit in the source of truth; abort on failure.
    try:
        await notion.mark_done(action.task_id)
    except Exception as exc:
        logger.error("Error marking task %s as done: %s", action.task_id, exc)
        notified = await _notify(slack, action, DONE_FAILURE_TEXT)
        return CompletionResult(task_id=action.task_id, status="failed", user_notified=notified, error=str(exc))

    result = CompletionResult(task_id=action.task_id, status="completed")

    # 2. Remove the card.
    try:
        await slack.delete_message(action.channel_id, action.message_ts)
        result.message_deleted = True
    except Exception as exc:
        logger.error("Task %s is done but message %s could not be deleted: %s", action.task_id, action.message_ts, exc)

    # 3. Confirm privately.
    result.user_notified = await _notify(slack, action, DONE_CONFIRMATION_TEXT)

    # 4. Refill the freed slot, starting with the completer's bucket.
    seed, _ = decode_recipient(action.message_text)
    try:
        replacement = await sync.backfill(seed, exclude_ids={action.task_id})
    except Exception as exc:
        logger.error("Backfill after completing %s failed: %s", action.task_id, exc)
        replacement = None
    if replacement is not None:
        result.backfilled_task_id = replacement.id

    logger.info("Task %s marked as done (message_deleted=%s)", action.task_id, result.message_deleted)
    return result
