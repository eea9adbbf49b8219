from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from bffauth.logging import get_logger, sanitize_error_message
from bffauth.service.tokens import TokenSet, auth_is_valid, auth_with_tokens
from bffauth.session.manager import SessionManager, merge_session_data

logger = get_logger(__name__)

RefreshFn = Callable[[str], Awaitable[TokenSet]]


class BackgroundRefresher:
    """Refreshes tokens for sessions close to expiry without blocking the request.

    At most one task runs per session id. The session is re-read from the store
    before and after the provider call; the new tokens are dropped if the
    session logged out or its refresh token changed in between.
    """

    def __init__(
        self,
        refresh_fn: RefreshFn,
        sessions: SessionManager,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.refresh_fn = refresh_fn
        self.sessions = sessions
        self._clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def enabled(self) -> bool:
        return not self.sessions.store.client_side

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def schedule(self, session_id: str, refresh_token: str) -> Optional[asyncio.Task]:
        if not self.enabled:
            return None
        existing = self._tasks.get(session_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.get_running_loop().create_task(self._run(session_id, refresh_token))
        self._tasks[session_id] = task
        task.add_done_callback(lambda done, sid=session_id: self._forget(sid, done))
        logger.debug("background_refresh_scheduled")
        return task

    def _forget(self, session_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]

    @staticmethod
    def _still_current(data: Optional[Dict[str, Any]], refresh_token: str) -> bool:
        if not data:
            return False
        auth = data.get("auth")
        return auth_is_valid(auth) and auth.get("refresh_token") == refresh_token

    async def _run(self, session_id: str, refresh_token: str) -> None:
        try:
            if not self._still_current(await self.sessions.load_by_id(session_id), refresh_token):
                logger.debug("background_refresh_skipped", reason="session_changed")
                return
            tokens = await self.refresh_fn(refresh_token)
            latest = await self.sessions.load_by_id(session_id)
            if not self._still_current(latest, refresh_token):
                logger.info("background_refresh_discarded", reason="session_changed")
                return
            now_ms = int(self._clock() * 1000)
            updated = merge_session_data(
                latest, {"auth": auth_with_tokens(latest["auth"], tokens, now_ms)}
            )
            await self.sessions.save_by_id(session_id, updated)
            logger.info("background_refresh_succeeded")
        except Exception as exc:
            logger.warning(
                "background_refresh_failed",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight refreshes; cancel whatever is left after ``timeout``."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("background_refresh_cancelled", count=len(still_running))
