import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from common.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# Delete the key only while it still holds our token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class LeaseUnavailableError(RuntimeError):
    pass


class ChannelLease:
    """Redis-backed mutual exclusion over channel mutation."""

    def __init__(self, redis_client, config: Settings = default_settings):
        self.redis = redis_client
        self.config = config
        self.key = config.CHANNEL_LEASE_KEY
        self.ttl_seconds = config.CHANNEL_LEASE_TTL_SECONDS

    async def acquire(self, wait_seconds: Optional[float] = None) -> Optional[str]:
        token = secrets.token_hex(16)
        wait = self.config.CHANNEL_LEASE_WAIT_SECONDS if wait_seconds is None else wait_seconds
        deadline = time.monotonic() + max(0.0, wait)
        while True:
            if await self.redis.set(self.key, token, nx=True, ex=self.ttl_seconds):
                return token
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(self.config.CHANNEL_LEASE_POLL_SECONDS)

    async def release(self, token: str) -> None:
        released = await self.redis.eval(_RELEASE_SCRIPT, 1, self.key, token)
        if not released:
            logger.warning("Channel lease %s expired before release", self.key)

    @asynccontextmanager
    async def hold(self, wait_seconds: Optional[float] = None) -> AsyncIterator[None]:
        if not self.config.CHANNEL_LEASE_ENABLED:
            yield
            return
        token = await self.acquire(wait_seconds)
        if token is None:
            raise LeaseUnavailableError(f"Channel lease {self.key} is held by another run")
        try:
            yield
        finally:
            try:
                await self.release(token)
            except Exception as exc:
                logger.error("Failed to release channel lease %s: %s", self.key, exc)
