from datetime import date
from typing import Dict, List, Optional, Set, Any
from enum import Enum as PyEnum

from pydantic import BaseModel, Field

# --- Enums ---

class Recipient(PyEnum):
    ROB = "ROB"
    SAM = "SAM"
    ANNA = "ANNA"
    UNASSIGNED = "UNASSIGNED"

class Urgency(PyEnum):
    OVERDUE = "OVERDUE"
    DUE_TODAY = "DUE_TODAY"
    UPCOMING = "UPCOMING"

# Allocation order and the order bucket names are matched in free text.
RECIPIENT_ORDER = (Recipient.ROB, Recipient.SAM, Recipient.ANNA, Recipient.UNASSIGNED)
KNOWN_RECIPIENTS = (Recipient.ROB, Recipient.SAM, Recipient.ANNA)
URGENCY_RANK = {Urgency.OVERDUE: 0, Urgency.DUE_TODAY: 1, Urgency.UPCOMING: 2}
URGENT = (Urgency.OVERDUE, Urgency.DUE_TODAY)

# --- Models ---

class Task(BaseModel):
    id: str
    title: str = "Untitled Task"
    due_date: Optional[date] = None
    url: str = ""
    recipient: Recipient = Recipient.UNASSIGNED
    label: str = "UNASSIGNED"
    assignee_name: Optional[str] = None
    urgency: Urgency = Urgency.UPCOMING

    @property
    def is_urgent(self) -> bool:
        return self.urgency in URGENT


class TaskWindow(BaseModel):
    overdue: List[Dict[str, Any]] = Field(default_factory=list)
    due_today: List[Dict[str, Any]] = Field(default_factory=list)
    upcoming: List[Dict[str, Any]] = Field(default_factory=list)

    def pages(self) -> List[Dict[str, Any]]:
        return [*self.overdue, *self.due_today, *self.upcoming]


class ChannelMessage(BaseModel):
    ts: str
    is_bot: bool = False
    text: str = ""
    blocks: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def from_slack(cls, raw: Dict[str, Any]) -> "ChannelMessage":
        blocks = raw.get("blocks")
        return cls(
            ts=str(raw.get("ts") or ""),
            is_bot=bool(raw.get("bot_id")),
            text=raw.get("text") or "",
            blocks=blocks if isinstance(blocks, list) else None,
        )


class CardInfo(BaseModel):
    recipient: Recipient = Recipient.UNASSIGNED
    task_id: Optional[str] = None
    label: Optional[str] = None


class ChannelState(BaseModel):
    posted_task_ids: Set[str] = Field(default_factory=set)
    count_by_bucket: Dict[Recipient, int] = Field(
        default_factory=lambda: {r: 0 for r in RECIPIENT_ORDER}
    )
    bot_message_count: int = 0

    @property
    def total_posted(self) -> int:
        return sum(self.count_by_bucket.values())

    def count(self, recipient: Recipient) -> int:
        return self.count_by_bucket.get(recipient, 0)


class MarkDoneAction(BaseModel):
    task_id: str
    user_id: str
    channel_id: str
    message_ts: str
    message_text: str = ""


class PostReport(BaseModel):
    posted: List[Task] = Field(default_factory=list)
    failed: List[Task] = Field(default_factory=list)


class ClearReport(BaseModel):
    listed: int = 0
    deleted: int = 0
    failed: int = 0


class CleanupReport(BaseModel):
    total_messages: int = 0
    deleted: int = 0
    failed: int = 0
    skipped: int = 0


class SyncSummary(BaseModel):
    posted: List[Task] = Field(default_factory=list)
    failed_posts: int = 0
    messages_deleted: int = 0
    candidates: int = 0

    @property
    def tasks_by_recipient(self) -> Dict[str, int]:
        counts = {r.value: 0 for r in RECIPIENT_ORDER}
        for task in self.posted:
            counts[task.recipient.value] += 1
        return counts

    def count_urgency(self, urgency: Urgency) -> int:
        return sum(1 for t in self.posted if t.urgency == urgency)


class CompletionResult(BaseModel):
    task_id: str
    status: str  # "completed" | "failed"
    message_deleted: bool = False
    user_notified: bool = False
    backfilled_task_id: Optional[str] = None
    error: Optional[str] = None
