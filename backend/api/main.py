import uuid
import logging
import asyncio
import traceback
from datetime import datetime, timezone
from typing import Dict, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import httpx

from fastapi import FastAPI, Depends, HTTPException, status, Request
from fastapi.responses import JSONResponse

import redis.asyncio as redis

from common.config import settings
from common.channel import ChannelWriter
from common.completion import complete_task
from common.lease import ChannelLease, LeaseUnavailableError
from common.models import Urgency
from common.notion import notion_adapter
from common.slack import (
    slack_adapter, verify_slack_signature, parse_interaction_payload, parse_mark_done_action
)
from common.sync import TaskSync
from api.schemas import (
    SyncResponse, SyncFailureResponse, UrgentTopUpResponse, PostedTaskItem, InteractionResponse,
    CleanupResponse, CleanupStats, StatusResponse, StatusFeatures
)

logger = logging.getLogger(__name__)
app = FastAPI(title="Urgent Task Sync API")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
_preflight_lock = asyncio.Lock()
_preflight_cache: Dict[str, Any] = {"checked_at": None, "report": None}
PREFLIGHT_CACHE_SECONDS = 300


def build_task_sync() -> TaskSync:
    return TaskSync(notion_adapter, slack_adapter, settings, lease=ChannelLease(redis_client, settings))


def _failure(status_code: int, error: str, include_stack: bool = False) -> JSONResponse:
    body = SyncFailureResponse(
        error=error,
        stack=traceback.format_exc() if include_stack else None,
        timestamp=utc_now().isoformat(),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))

# --- Middleware & Dependencies ---

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

async def require_operator(request: Request):
    tokens = settings.auth_tokens
    if not tokens:
        return
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid authorization header")
    token = auth_header.split(" ", 1)[1].strip()
    if token not in tokens:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

# --- Health Endpoints ---

def _external_preflight_required() -> bool:
    return settings.APP_ENV.strip().lower() in {"staging", "prod", "production"}


async def _check_notion_credentials() -> Dict[str, Any]:
    if not (settings.NOTION_TOKEN or "").strip():
        return {"ok": False, "reason": "notion_token_missing"}
    try:
        database = await notion_adapter.get_database()
    except httpx.HTTPStatusError as exc:
        if exc.response.status_code in {401, 403}:
            return {"ok": False, "reason": "notion_auth_failed"}
        return {"ok": False, "reason": f"notion_http_{exc.response.status_code}"}
    except httpx.HTTPError:
        return {"ok": False, "reason": "notion_unreachable"}
    if database is None:
        return {"ok": False, "reason": "notion_database_not_found"}
    return {"ok": True}


async def _check_slack_credentials() -> Dict[str, Any]:
    if not (settings.SLACK_BOT_TOKEN or "").strip():
        return {"ok": False, "reason": "slack_token_missing"}
    try:
        await slack_adapter.auth_test()
    except httpx.HTTPError:
        return {"ok": False, "reason": "slack_unreachable"}
    except RuntimeError as exc:
        return {"ok": False, "reason": f"slack_auth_failed:{getattr(exc, 'error', exc)}"}
    return {"ok": True}


async def _compute_preflight_report() -> Dict[str, Any]:
    notion = await _check_notion_credentials()
    slack = await _check_slack_credentials()
    checks = {"notion": notion, "slack": slack}
    return {
        "ok": all(isinstance(item, dict) and item.get("ok") is True for item in checks.values()),
        "checks": checks,
        "checked_at": utc_now().isoformat(),
    }


async def _get_preflight_report(force: bool = False) -> Dict[str, Any]:
    now = utc_now()
    async with _preflight_lock:
        checked_at = _preflight_cache.get("checked_at")
        cached = _preflight_cache.get("report")
        fresh = (
            isinstance(checked_at, datetime)
            and isinstance(cached, dict)
            and (now - checked_at).total_seconds() < PREFLIGHT_CACHE_SECONDS
        )
        if not force and fresh:
            return cached
        report = await _compute_preflight_report()
        _preflight_cache["checked_at"] = now
        _preflight_cache["report"] = report
        return report


@app.get("/")
async def root():
    return {
        "message": "Notion-Slack Automation is running!",
        "timestamp": utc_now().isoformat(),
        "environment": settings.APP_ENV,
        "endpoints": {
            "sync": "/api/sync",
            "interactions": "/api/slack-interactions",
            "status": "/api/status",
        },
    }

@app.get("/health/live")
async def health_live():
    return {"status": "ok"}

@app.get("/health/ready")
async def health_ready():
    if settings.CHANNEL_LEASE_ENABLED:
        try:
            await redis_client.ping()
        except Exception:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Infrastructure unreachable")
    if _external_preflight_required():
        report = await _get_preflight_report()
        if not report.get("ok"):
            failing = [
                name
                for name, item in (report.get("checks") or {}).items()
                if not (isinstance(item, dict) and item.get("ok") is True)
            ]
            fail_key = failing[0] if failing else "unknown"
            reason = ((report.get("checks") or {}).get(fail_key) or {}).get("reason", "preflight_failed")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Preflight failed: {fail_key}:{reason}",
            )
    return {"status": "ready"}


@app.get("/health/preflight")
async def health_preflight():
    if not _external_preflight_required():
        return {"status": "skipped", "reason": "preflight_not_required_in_env", "env": settings.APP_ENV}
    report = await _get_preflight_report()
    return {
        "status": "ok" if report.get("ok") else "failed",
        "checked_at": report.get("checked_at"),
        "checks": report.get("checks", {}),
    }

# --- Sync Endpoints ---

FAILURE_RESPONSES = {409: {"model": SyncFailureResponse}, 500: {"model": SyncFailureResponse}}


@app.api_route(
    "/api/sync",
    methods=["GET", "POST"],
    response_model=SyncResponse,
    responses=FAILURE_RESPONSES,
    dependencies=[Depends(require_operator)],
)
async def sync_channel():
    logger.info("Starting Notion-Slack sync (horizon=%s days)", settings.SYNC_HORIZON_DAYS)
    try:
        summary = await build_task_sync().full_resync()
    except LeaseUnavailableError as e:
        logger.warning("Sync skipped: %s", e)
        return _failure(status.HTTP_409_CONFLICT, str(e))
    except Exception as e:
        logger.exception("Sync error: %s", e)
        return _failure(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e), include_stack=True)

    return SyncResponse(
        tasks_posted=len(summary.posted),
        tasks_by_recipient=summary.tasks_by_recipient,
        overdue_tasks=summary.count_urgency(Urgency.OVERDUE),
        due_today_tasks=summary.count_urgency(Urgency.DUE_TODAY),
        upcoming_tasks=summary.count_urgency(Urgency.UPCOMING),
        failed_posts=summary.failed_posts,
        messages_deleted=summary.messages_deleted,
        timestamp=utc_now().isoformat(),
    )


@app.post("/api/notion-webhook", response_model=UrgentTopUpResponse, responses=FAILURE_RESPONSES, dependencies=[Depends(require_operator)])
async def notion_webhook():
    logger.info("Notion webhook triggered")
    try:
        summary = await build_task_sync().top_up_urgent()
    except LeaseUnavailableError as e:
        logger.warning("Urgent top-up skipped: %s", e)
        return _failure(status.HTTP_409_CONFLICT, str(e))
    except Exception as e:
        logger.exception("Webhook error: %s", e)
        return _failure(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))

    return UrgentTopUpResponse(
        message="Webhook processed successfully" if summary.posted else "No new urgent tasks found",
        new_tasks_posted=len(summary.posted),
        tasks=[PostedTaskItem(task_id=t.id, recipient=t.recipient.value, title=t.title) for t in summary.posted],
        timestamp=utc_now().isoformat(),
    )

# --- Slack Interactions ---

@app.post("/api/slack-interactions", response_model=InteractionResponse)
async def slack_interactions(request: Request):
    raw_body = await request.body()

    if settings.SLACK_VERIFY_SIGNATURES:
        if not verify_slack_signature(
            settings.SLACK_SIGNING_SECRET,
            request.headers.get("X-Slack-Request-Timestamp"),
            raw_body,
            request.headers.get("X-Slack-Signature"),
            max_age_seconds=settings.SLACK_SIGNATURE_MAX_AGE_SECONDS,
        ):
            return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "Invalid signature"})
    else:
        logger.warning("Slack signature verification is disabled")

    payload = parse_interaction_payload(raw_body, request.headers.get("Content-Type"))
    if payload is None:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid payload"})

    action = parse_mark_done_action(payload)
    if action is None:
        return {"success": True, "status": "ignored"}

    try:
        result = await complete_task(action, notion_adapter, slack_adapter, build_task_sync())
    except Exception as e:
        logger.exception("Slack interaction error: %s", e)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(e)},
        )
    return {"success": True, "status": result.status}

# --- Admin ---

@app.get("/api/status", response_model=StatusResponse)
async def channel_status():
    try:
        schedule_tz = ZoneInfo(settings.SYNC_TIMEZONE)
    except ZoneInfoNotFoundError:
        schedule_tz = timezone.utc
    now = utc_now()
    return StatusResponse(
        version=settings.APP_VERSION,
        environment=settings.APP_ENV,
        current_time={"utc": now.isoformat(), "local": now.astimezone(schedule_tz).isoformat()},
        schedule={
            "sync": f"hourly at minute 0, hours {settings.SYNC_SCHEDULE_HOURS} ({settings.SYNC_TIMEZONE})",
            "cleanup": settings.CLEANUP_SCHEDULE_TIME,
        },
        endpoints={
            "sync": "/api/sync",
            "interactions": "/api/slack-interactions",
            "status": "/api/status",
            "cleanup": "/api/cleanup",
            "notion_webhook": "/api/notion-webhook",
        },
        features=StatusFeatures(
            max_tasks=settings.MAX_POSTED_TASKS,
            max_tasks_per_person=settings.MAX_TASKS_PER_RECIPIENT,
            day_limit=settings.SYNC_HORIZON_DAYS,
            person_mapping=settings.recipient_directory,
            signature_verification=settings.SLACK_VERIFY_SIGNATURES,
        ),
    )


@app.post("/api/cleanup", response_model=CleanupResponse, responses=FAILURE_RESPONSES, dependencies=[Depends(require_operator)])
async def cleanup_channel():
    logger.info("Manual cleanup: deleting bot messages and human messages older than %sh", settings.CLEANUP_HUMAN_GRACE_HOURS)
    writer = ChannelWriter(slack_adapter, settings)
    try:
        async with ChannelLease(redis_client, settings).hold():
            report = await writer.cleanup()
    except LeaseUnavailableError as e:
        return _failure(status.HTTP_409_CONFLICT, str(e))
    except Exception as e:
        logger.exception("Manual cleanup error: %s", e)
        return _failure(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))

    return CleanupResponse(stats=CleanupStats(**report.model_dump()), timestamp=utc_now().isoformat())
