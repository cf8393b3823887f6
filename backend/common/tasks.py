import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from common.config import Settings, settings as default_settings
from common.models import Task, Recipient, Urgency, URGENCY_RANK

logger = logging.getLogger(__name__)

UNTITLED = "Untitled Task"


def _recipient_for_code(code: str) -> Optional[Recipient]:
    try:
        recipient = Recipient(code)
    except ValueError:
        return None
    if recipient == Recipient.UNASSIGNED:
        return None
    return recipient


def build_directory(config: Settings) -> List[Tuple[str, Recipient]]:
    """Resolve the configured name table into (full name, recipient) pairs."""
    directory = []
    for full_name, code in config.recipient_directory.items():
        recipient = _recipient_for_code(code)
        if recipient is None:
            logger.warning("Ignoring recipient directory entry %s:%s (unknown code)", full_name, code)
            continue
        directory.append((full_name, recipient))
    return directory


def classify_recipient(name: Optional[str], directory: List[Tuple[str, Recipient]]) -> Tuple[Recipient, str]:
    """Returns (bucket, display label) for an assignee display name."""
    cleaned = (name or "").strip()
    if not cleaned:
        return Recipient.UNASSIGNED, Recipient.UNASSIGNED.value

    for full_name, recipient in directory:
        if cleaned == full_name:
            return recipient, recipient.value

    # Partial match: every component of the known full name appears in the name.
    for full_name, recipient in directory:
        parts = full_name.split()
        if parts and all(part in cleaned for part in parts):
            return recipient, recipient.value

    return Recipient.UNASSIGNED, cleaned.split()[0].upper()


def classify_urgency(due: Optional[date], today: date) -> Urgency:
    if due is None:
        return Urgency.UPCOMING
    if due < today:
        return Urgency.OVERDUE
    if due == today:
        return Urgency.DUE_TODAY
    return Urgency.UPCOMING


def extract_title(page: Dict[str, Any]) -> str:
    properties = page.get("properties") or {}
    for prop in properties.values():
        if not isinstance(prop, dict) or prop.get("type") != "title":
            continue
        items = prop.get("title") or []
        if items and isinstance(items[0], dict):
            text = (items[0].get("plain_text") or "").strip()
            if text:
                return text
        return UNTITLED
    return UNTITLED


def parse_due_date(value: Any) -> Optional[date]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def extract_due_date(page: Dict[str, Any], property_name: str) -> Optional[date]:
    prop = (page.get("properties") or {}).get(property_name) or {}
    date_value = prop.get("date") if isinstance(prop, dict) else None
    if not isinstance(date_value, dict):
        return None
    return parse_due_date(date_value.get("start"))


def extract_assignee_name(page: Dict[str, Any], property_name: str) -> Optional[str]:
    prop = (page.get("properties") or {}).get(property_name) or {}
    people = prop.get("people") if isinstance(prop, dict) else None
    if not isinstance(people, list) or not people:
        return None
    first = people[0]
    if not isinstance(first, dict):
        return None
    name = first.get("name")
    return name if isinstance(name, str) and name.strip() else None


def normalize_page(page: Dict[str, Any], today: date, config: Settings = default_settings,
                   directory: Optional[List[Tuple[str, Recipient]]] = None) -> Task:
    if directory is None:
        directory = build_directory(config)
    due = extract_due_date(page, config.NOTION_DUE_PROPERTY)
    assignee = extract_assignee_name(page, config.NOTION_ASSIGNEE_PROPERTY)
    recipient, label = classify_recipient(assignee, directory)
    return Task(
        id=str(page.get("id")),
        title=extract_title(page),
        due_date=due,
        url=page.get("url") or "",
        recipient=recipient,
        label=label,
        assignee_name=assignee,
        urgency=classify_urgency(due, today),
    )


def within_horizon(task: Task, today: date, horizon_days: int) -> bool:
    if task.due_date is None:
        return True
    return task.due_date <= today + timedelta(days=horizon_days)


def normalize_pages(pages: List[Dict[str, Any]], today: date, config: Settings = default_settings,
                    horizon_days: Optional[int] = None) -> List[Task]:
    """Normalize raw pages, dropping duplicates and anything past the horizon."""
    directory = build_directory(config)
    seen = set()
    tasks: List[Task] = []
    for page in pages:
        task = normalize_page(page, today, config, directory)
        if task.id in seen:
            continue
        seen.add(task.id)
        if horizon_days is not None and not within_horizon(task, today, horizon_days):
            logger.info("Skipping task beyond %s-day horizon: %s (%s)", horizon_days, task.title, task.due_date)
            continue
        tasks.append(task)
    return tasks


def priority_key(task: Task) -> Tuple[int, date]:
    return URGENCY_RANK[task.urgency], task.due_date or date.max
