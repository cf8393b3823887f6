from typing import List, Optional, Dict
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RECIPIENT_DIRECTORY = "Robert Schok:ROB,Samuel Robertson:SAM,Anna Schuster:ANNA"


class Settings(BaseSettings):
    # Shared
    APP_ENV: str = "dev"
    APP_PORT: int = 8000
    APP_VERSION: str = "2026.01.28"
    APP_TIMEZONE: str = "UTC"
    REDIS_URL: str = "redis://localhost:6379/0"
    APP_AUTH_BEARER_TOKENS: Optional[str] = None  # Comma-separated; unset disables auth
    HTTP_TIMEOUT_SECONDS: float = 15.0

    # Notion (task source)
    NOTION_TOKEN: Optional[str] = None
    NOTION_DATABASE_ID: str
    NOTION_API_BASE: str = "https://api.notion.com/v1"
    NOTION_VERSION: str = "2022-06-28"
    NOTION_DONE_PROPERTY: str = "Checkbox"
    NOTION_DUE_PROPERTY: str = "Due Date"
    NOTION_ASSIGNEE_PROPERTY: str = "Assigned To"
    NOTION_PAGE_SIZE: int = 100

    # Slack (channel)
    SLACK_BOT_TOKEN: Optional[str] = None
    SLACK_SIGNING_SECRET: Optional[str] = None
    SLACK_CHANNEL_ID: str
    SLACK_API_BASE: str = "https://slack.com/api"
    SLACK_VERIFY_SIGNATURES: bool = True
    SLACK_SIGNATURE_MAX_AGE_SECONDS: int = 300
    SLACK_POST_DELAY_SECONDS: float = 0.1
    SLACK_DELETE_DELAY_SECONDS: float = 0.05

    # Reconciliation
    SYNC_HORIZON_DAYS: int = 5
    MAX_POSTED_TASKS: int = 9
    MAX_TASKS_PER_RECIPIENT: int = 3
    CHANNEL_HISTORY_LIMIT: int = 200
    RECIPIENT_DIRECTORY: str = DEFAULT_RECIPIENT_DIRECTORY  # "Full Name:CODE" pairs, comma-separated

    # Admin cleanup
    CLEANUP_PAGE_SIZE: int = 200
    CLEANUP_MAX_PAGES: int = 10
    CLEANUP_HUMAN_GRACE_HOURS: int = 24
    CLEANUP_DELETE_DELAY_SECONDS: float = 0.2

    # Channel lease
    CHANNEL_LEASE_ENABLED: bool = True
    CHANNEL_LEASE_KEY: str = "channel_lease"
    CHANNEL_LEASE_TTL_SECONDS: int = 120
    CHANNEL_LEASE_WAIT_SECONDS: float = 10.0
    CHANNEL_LEASE_POLL_SECONDS: float = 0.25

    # Worker schedule
    SYNC_SCHEDULE_HOURS: str = "6-22"
    SYNC_TIMEZONE: str = "America/New_York"
    CLEANUP_SCHEDULE_TIME: Optional[str] = None  # HH:MM in SYNC_TIMEZONE
    WORKER_MAX_ATTEMPTS: int = 5

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def auth_tokens(self) -> List[str]:
        if not self.APP_AUTH_BEARER_TOKENS:
            return []
        return [t.strip() for t in self.APP_AUTH_BEARER_TOKENS.split(",") if t.strip()]

    @property
    def recipient_directory(self) -> Dict[str, str]:
        """Full display name -> recipient code."""
        mapping = {}
        for pair in (self.RECIPIENT_DIRECTORY or "").split(","):
            pair = pair.strip()
            if not pair or ":" not in pair:
                continue
            name, code = pair.rsplit(":", 1)
            name = name.strip()
            code = code.strip().upper()
            if name and code:
                mapping[name] = code
        return mapping

    @property
    def schedule_hours(self) -> List[int]:
        hours = set()
        for part in (self.SYNC_SCHEDULE_HOURS or "").split(","):
            part = part.strip()
            if not part:
                continue
            if "-" in part:
                start, end = part.split("-", 1)
                hours.update(range(int(start), int(end) + 1))
            else:
                hours.add(int(part))
        return sorted(h for h in hours if 0 <= h <= 23)

settings = Settings()
