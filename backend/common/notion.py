import logging
import httpx
from datetime import date, timedelta
from typing import Dict, Any, Optional, List
from common.config import Settings, settings as default_settings
from common.models import TaskWindow

logger = logging.getLogger(__name__)

class NotionAdapter:
    def __init__(self, config: Settings = default_settings):
        self.config = config
        self.base_url = config.NOTION_API_BASE.rstrip("/")
        self.token = config.NOTION_TOKEN
        self.database_id = config.NOTION_DATABASE_ID

    def _get_headers(self) -> Dict[str, str]:
        if not self.token:
            raise RuntimeError("NOTION_TOKEN not configured")
        return {
            "Authorization": f"Bearer {self.token}",
            "Notion-Version": self.config.NOTION_VERSION,
            "Content-Type": "application/json"
        }

    def _open_filter(self, date_condition: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "and": [
                {"property": self.config.NOTION_DONE_PROPERTY, "checkbox": {"equals": False}},
                {"property": self.config.NOTION_DUE_PROPERTY, "date": date_condition},
            ]
        }

    async def query_database(self, filter_: Dict[str, Any], sorts: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        """
        Runs one filtered database query, following pagination to the end.
        """
        url = f"{self.base_url}/databases/{self.database_id}/query"
        results: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        async with httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_SECONDS) as client:
            while True:
                body: Dict[str, Any] = {"filter": filter_, "page_size": self.config.NOTION_PAGE_SIZE}
                if sorts:
                    body["sorts"] = sorts
                if cursor:
                    body["start_cursor"] = cursor
                resp = await client.post(url, headers=self._get_headers(), json=body)
                resp.raise_for_status()
                payload = resp.json()
                page_results = payload.get("results") if isinstance(payload, dict) else None
                if isinstance(page_results, list):
                    results.extend(page_results)
                cursor = payload.get("next_cursor") if isinstance(payload, dict) else None
                if not (isinstance(payload, dict) and payload.get("has_more") and cursor):
                    break
        return results

    async def _query_due(self, date_condition: Dict[str, Any]) -> List[Dict[str, Any]]:
        sorts = [{"property": self.config.NOTION_DUE_PROPERTY, "direction": "ascending"}]
        return await self.query_database(self._open_filter(date_condition), sorts)

    async def fetch_urgent_tasks(self, today: date) -> TaskWindow:
        """Open pages due before or on `today`, as two separate passes."""
        today_str = today.isoformat()
        overdue = await self._query_due({"before": today_str})
        due_today = await self._query_due({"equals": today_str})
        return TaskWindow(overdue=overdue, due_today=due_today)

    async def fetch_open_tasks(self, today: date, horizon_days: int) -> TaskWindow:
        """
        Open pages split into overdue / due today / upcoming within the horizon.
        """
        window = await self.fetch_urgent_tasks(today)
        horizon_str = (today + timedelta(days=horizon_days)).isoformat()
        window.upcoming = await self._query_due({"after": today.isoformat(), "on_or_before": horizon_str})
        logger.info(
            "Found %s overdue, %s due today, %s upcoming (within %s days) tasks",
            len(window.overdue), len(window.due_today), len(window.upcoming), horizon_days,
        )
        return window

    async def mark_done(self, page_id: str) -> bool:
        """
        Sets the done checkbox on a page.
        """
        url = f"{self.base_url}/pages/{page_id}"
        payload = {"properties": {self.config.NOTION_DONE_PROPERTY: {"checkbox": True}}}
        async with httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_SECONDS) as client:
            resp = await client.patch(url, headers=self._get_headers(), json=payload)
            resp.raise_for_status()
            return True

    async def get_database(self) -> Optional[Dict[str, Any]]:
        """Fetches the configured database's metadata.

        Returns None when the database is not found or not shared with the integration.
        """
        url = f"{self.base_url}/databases/{self.database_id}"
        async with httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_SECONDS) as client:
            resp = await client.get(url, headers=self._get_headers())
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()

notion_adapter = NotionAdapter()
