import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, List, Optional, Union
from urllib.parse import parse_qs

import httpx

from common.cards import MARK_DONE_ACTION_ID
from common.config import Settings, settings as default_settings
from common.models import MarkDoneAction

logger = logging.getLogger(__name__)

SIGNATURE_VERSION = "v0"


class SlackApiError(RuntimeError):
    def __init__(self, method: str, error: str):
        super().__init__(f"Slack {method} failed: {error}")
        self.method = method
        self.error = error


class SlackRateLimitedError(SlackApiError):
    def __init__(self, method: str, retry_after: Optional[float] = None):
        super().__init__(method, "ratelimited")
        self.retry_after = retry_after


class SlackAdapter:
    def __init__(self, config: Settings = default_settings):
        self.config = config
        self.base_url = config.SLACK_API_BASE.rstrip("/")
        self.token = config.SLACK_BOT_TOKEN

    def _get_headers(self) -> Dict[str, str]:
        if not self.token:
            raise RuntimeError("SLACK_BOT_TOKEN not configured")
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json; charset=utf-8",
        }

    def _unwrap(self, method: str, resp: httpx.Response) -> Dict[str, Any]:
        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            raise SlackRateLimitedError(method, float(retry_after) if retry_after else None)
        resp.raise_for_status()
        payload = resp.json()
        if not isinstance(payload, dict):
            raise SlackApiError(method, "invalid_response")
        if payload.get("ok") is not True:
            error = str(payload.get("error") or "unknown_error")
            if error == "ratelimited":
                raise SlackRateLimitedError(method)
            raise SlackApiError(method, error)
        return payload

    async def _call(self, method: str, *, json_body: Optional[Dict[str, Any]] = None,
                    params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{method}"
        async with httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_SECONDS) as client:
            if json_body is not None:
                resp = await client.post(url, headers=self._get_headers(), json=json_body)
            else:
                resp = await client.get(url, headers=self._get_headers(), params=params or {})
        return self._unwrap(method, resp)

    async def history(self, channel: str, limit: int = 200, cursor: Optional[str] = None) -> Dict[str, Any]:
        """One page of conversations.history, newest first."""
        params: Dict[str, Any] = {"channel": channel, "limit": limit}
        if cursor:
            params["cursor"] = cursor
        return await self._call("conversations.history", params=params)

    async def post_message(self, channel: str, text: str, blocks: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            body["blocks"] = blocks
        return await self._call("chat.postMessage", json_body=body)

    async def delete_message(self, channel: str, ts: str) -> Dict[str, Any]:
        return await self._call("chat.delete", json_body={"channel": channel, "ts": ts})

    async def post_ephemeral(self, channel: str, user: str, text: str) -> Dict[str, Any]:
        return await self._call("chat.postEphemeral", json_body={"channel": channel, "user": user, "text": text})

    async def auth_test(self) -> Dict[str, Any]:
        return await self._call("auth.test", json_body={})


def compute_slack_signature(signing_secret: str, timestamp: str, body: Union[bytes, str]) -> str:
    raw = body.decode("utf-8") if isinstance(body, bytes) else body
    basestring = f"{SIGNATURE_VERSION}:{timestamp}:{raw}".encode("utf-8")
    digest = hmac.new(signing_secret.encode("utf-8"), basestring, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}"


def verify_slack_signature(
    signing_secret: Optional[str],
    timestamp: Optional[str],
    body: Union[bytes, str],
    signature: Optional[str],
    now: Optional[float] = None,
    max_age_seconds: int = 300,
) -> bool:
    if not signing_secret or not timestamp or not signature:
        return False
    try:
        ts_value = int(timestamp)
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    if abs(current - ts_value) > max_age_seconds:
        return False
    expected = compute_slack_signature(signing_secret, timestamp, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def parse_interaction_payload(raw_body: bytes, content_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Decode an interaction callback body sent as a form or as JSON."""
    text = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else str(raw_body or "")
    if not text.strip():
        return None

    candidate: Any = None
    if "application/json" in (content_type or "").lower() or text.lstrip().startswith("{"):
        try:
            candidate = json.loads(text)
        except ValueError:
            return None
        if isinstance(candidate, dict) and isinstance(candidate.get("payload"), str):
            candidate = candidate["payload"]
        else:
            return candidate if isinstance(candidate, dict) else None
    else:
        form = parse_qs(text, keep_blank_values=True)
        candidate = (form.get("payload") or [""])[0]

    if not isinstance(candidate, str) or not candidate.strip():
        return None
    try:
        payload = json.loads(candidate)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def parse_mark_done_action(payload: Dict[str, Any]) -> Optional[MarkDoneAction]:
    if not isinstance(payload, dict) or payload.get("type") != "block_actions":
        return None
    actions = payload.get("actions")
    if not isinstance(actions, list) or not actions or not isinstance(actions[0], dict):
        return None
    action = actions[0]
    if action.get("action_id") != MARK_DONE_ACTION_ID:
        return None
    task_id = action.get("value")
    user = payload.get("user") if isinstance(payload.get("user"), dict) else {}
    channel = payload.get("channel") if isinstance(payload.get("channel"), dict) else {}
    message = payload.get("message") if isinstance(payload.get("message"), dict) else {}
    if not isinstance(task_id, str) or not task_id.strip():
        return None
    if not user.get("id") or not channel.get("id") or not message.get("ts"):
        return None
    return MarkDoneAction(
        task_id=task_id.strip(),
        user_id=str(user["id"]),
        channel_id=str(channel["id"]),
        message_ts=str(message["ts"]),
        message_text=message.get("text") or "",
    )


slack_adapter = SlackAdapter()
