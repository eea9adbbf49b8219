from __future__ import annotations

import json
from typing import Any, List, Optional, Tuple

import redis.asyncio as aioredis

from bffauth.logging import get_logger
from bffauth.storage.base import SessionData, SessionStore

logger = get_logger(__name__)


class RedisSessionStore(SessionStore):
    """Sessions as JSON strings under ``<prefix>:<id>`` with a Redis TTL."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "auth-session",
        ttl_seconds: int = 86400,
        client: Any = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds)
        self.redis_url = redis_url
        self.prefix = prefix.rstrip(":")
        self._owns_client = client is None
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, session_id: str) -> str:
        return f"{self.prefix}:{session_id}"

    def _session_id(self, key: str) -> str:
        return key[len(self.prefix) + 1:]

    @staticmethod
    def _decode(raw: Any) -> Optional[SessionData]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("redis_session_corrupt")
            return None
        return data if isinstance(data, dict) else None

    async def get(self, session_id: str) -> Optional[SessionData]:
        return self._decode(await self.client.get(self._key(session_id)))

    async def set(self, session_id: str, data: SessionData) -> None:
        await self.client.set(
            self._key(session_id), json.dumps(data), ex=max(1, int(self.ttl_seconds))
        )

    async def delete(self, session_id: str) -> None:
        await self.client.delete(self._key(session_id))

    async def touch(self, session_id: str, data: SessionData) -> None:
        refreshed = await self.client.expire(
            self._key(session_id), max(1, int(self.ttl_seconds))
        )
        if not refreshed:
            await self.set(session_id, data)

    async def list(self) -> List[Tuple[str, SessionData]]:
        sessions: List[Tuple[str, SessionData]] = []
        async for key in self.client.scan_iter(match=f"{self.prefix}:*"):
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            data = self._decode(await self.client.get(key))
            # Keys may expire between SCAN and GET
            if data is not None:
                sessions.append((self._session_id(key), data))
        return sessions

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
