from pydantic import BaseModel, Field
from typing import Optional, Dict, List


class SyncResponse(BaseModel):
    success: bool = True
    message: str = "Sync completed successfully"
    tasks_posted: int = 0
    tasks_by_recipient: Dict[str, int] = Field(default_factory=dict)
    overdue_tasks: int = 0
    due_today_tasks: int = 0
    upcoming_tasks: int = 0
    failed_posts: int = 0
    messages_deleted: int = 0
    timestamp: str


class SyncFailureResponse(BaseModel):
    success: bool = False
    error: str
    stack: Optional[str] = None
    timestamp: str


class PostedTaskItem(BaseModel):
    task_id: str
    recipient: str
    title: str


class UrgentTopUpResponse(BaseModel):
    success: bool = True
    message: str
    new_tasks_posted: int = 0
    tasks: List[PostedTaskItem] = Field(default_factory=list)
    timestamp: str


class InteractionResponse(BaseModel):
    success: bool = True
    status: str = "ok"


class CleanupStats(BaseModel):
    total_messages: int = 0
    deleted: int = 0
    failed: int = 0
    skipped: int = 0


class CleanupResponse(BaseModel):
    success: bool = True
    message: str = "Manual cleanup completed"
    stats: CleanupStats
    timestamp: str


class StatusFeatures(BaseModel):
    max_tasks: int
    max_tasks_per_person: int
    day_limit: int
    person_mapping: Dict[str, str]
    signature_verification: bool


class StatusResponse(BaseModel):
    status: str = "healthy"
    version: str
    environment: str
    current_time: Dict[str, str]
    schedule: Dict[str, Optional[str]]
    endpoints: Dict[str, str]
    features: StatusFeatures
