"""Task card wire format.

A posted card carries everything needed to rebuild channel state:

- ``text`` (the plain-text summary): ``"{LABEL}: {title} - {due text}"``
- a ``section`` block whose accessory is the ``mark_done`` button; the
  button ``value`` is the source record id.

``decode_card`` reads that contract back. Lines that do not follow the
``LABEL: `` prefix fall back to probing the text for bucket names, which can
misfile a card whose title happens to contain one (``"PROBLEM"`` contains
``"ROB"``). An unknown assignee whose first name equals a bucket code is
also read back as that bucket.
"""
import re
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from common.models import Task, Urgency, Recipient, ChannelMessage, CardInfo, KNOWN_RECIPIENTS

MARK_DONE_ACTION_ID = "mark_done"
NO_DUE_DATE_TEXT = "No due date"

RECIPIENT_EMOJI = {
    Recipient.ROB: "👨‍💼",
    Recipient.SAM: "👨‍💻",
    Recipient.ANNA: "👩‍💼",
}
UNKNOWN_ASSIGNEE_EMOJI = "👤"
UNASSIGNED_EMOJI = "❓"

_SUMMARY_PREFIX = re.compile(r"^(?P<label>[^\s:]+): ")


def format_due_date(due: Optional[date]) -> str:
    if due is None:
        return NO_DUE_DATE_TEXT
    return f"{due.month}/{due.day}/{due.year}"


def escape_mrkdwn(text: str) -> str:
    """Escape &, <, > for Slack mrkdwn text."""
    return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def recipient_emoji(task: Task) -> str:
    if task.recipient in RECIPIENT_EMOJI:
        return RECIPIENT_EMOJI[task.recipient]
    if task.assignee_name:
        return UNKNOWN_ASSIGNEE_EMOJI
    return UNASSIGNED_EMOJI


def summary_line(task: Task) -> str:
    return f"{task.label}: {escape_mrkdwn(task.title)} - {format_due_date(task.due_date)}"


def due_line(task: Task) -> str:
    due_text = format_due_date(task.due_date)
    if task.due_date is None:
        return f"📅 Due: {due_text}"
    if task.urgency == Urgency.OVERDUE:
        return f"🔴 *overdue*: {due_text}"
    if task.urgency == Urgency.DUE_TODAY:
        return f"🟡 *due today*: {due_text}"
    return f"📅 *upcoming*: {due_text}"


def build_done_button(task: Task) -> Dict[str, Any]:
    button: Dict[str, Any] = {
        "type": "button",
        "text": {"type": "plain_text", "text": "✅ Done"},
        "action_id": MARK_DONE_ACTION_ID,
        "value": task.id,
    }
    # Upcoming cards keep Slack's default button style.
    if task.is_urgent:
        button["style"] = "primary"
    return button


def build_task_card(task: Task, source_name: str = "Notion") -> Dict[str, Any]:
    """Returns the chat.postMessage body (minus channel) for one task."""
    header = f"{recipient_emoji(task)} *{escape_mrkdwn(task.label)}* 📌 *{escape_mrkdwn(task.title)}*"
    blocks: List[Dict[str, Any]] = [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"{header}\n{due_line(task)}"},
            "accessory": build_done_button(task),
        }
    ]
    if task.url:
        blocks.append(
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": f"<{task.url}|View in {source_name}>"}],
            }
        )
    return {"text": summary_line(task), "blocks": blocks}


def decode_recipient(text: str) -> Tuple[Recipient, Optional[str]]:
    """Returns (bucket, label) from a card's plain-text summary."""
    raw = text or ""
    match = _SUMMARY_PREFIX.match(raw)
    if match and match.group("label") == match.group("label").upper():
        label = match.group("label")
        for recipient in KNOWN_RECIPIENTS:
            if label == recipient.value:
                return recipient, label
        return Recipient.UNASSIGNED, label

    for recipient in KNOWN_RECIPIENTS:
        if recipient.value in raw:
            return recipient, None
    return Recipient.UNASSIGNED, None


def extract_task_id(blocks: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    for block in blocks or []:
        if not isinstance(block, dict) or block.get("type") != "section":
            continue
        accessory = block.get("accessory")
        if not isinstance(accessory, dict) or accessory.get("type") != "button":
            continue
        value = accessory.get("value")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def decode_card(message: ChannelMessage) -> Optional[CardInfo]:
    """Decode a bot card; returns None for messages that are not cards."""
    if not message.is_bot or not message.blocks:
        return None
    recipient, label = decode_recipient(message.text)
    return CardInfo(recipient=recipient, task_id=extract_task_id(message.blocks), label=label)
