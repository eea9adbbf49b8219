from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict

from bffauth.logging import get_logger, sanitize_error_message
from bffauth.service.errors import ServerError, ServiceError
from bffauth.service.tokens import TokenSet, auth_with_tokens, should_refresh_token
from bffauth.session.manager import SessionManager, merge_session_data

logger = get_logger(__name__)

_REFRESHED = "refreshed"
_FAILED = "failed"
_SKIPPED = "skipped"


@dataclass(frozen=True)
class RefreshSummary:
    refreshed: int
    failed: int
    total: int

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class TokenRefreshJob:
    """Refreshes every stored session whose access token is about to expire.

    Meant to be triggered by a scheduler (the ``refresh-tokens`` route or the
    in-process loop). Sessions are processed concurrently and a failure in one
    never affects the others: it is logged and the session is marked
    unauthenticated.
    """

    def __init__(
        self,
        refresh_fn: Callable[[str], Awaitable[TokenSet]],
        sessions: SessionManager,
        *,
        safety_margin_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.refresh_fn = refresh_fn
        self.sessions = sessions
        self.safety_margin_seconds = safety_margin_seconds
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def run(self) -> RefreshSummary:
        try:
            listed = await self.sessions.list_sessions()
        except ServiceError as exc:
            logger.error("token_refresh_list_failed", error=exc.message)
            raise ServerError("failed to refresh expiring tokens") from exc

        outcomes = await asyncio.gather(
            *(self._refresh_one(session_id, data) for session_id, data in listed)
        )
        summary = RefreshSummary(
            refreshed=outcomes.count(_REFRESHED),
            failed=outcomes.count(_FAILED),
            total=len(listed),
        )
        logger.info("token_refresh_completed", **summary.as_dict())
        return summary

    async def _refresh_one(self, session_id: str, data: Dict[str, Any]) -> str:
        auth = data.get("auth") or {}
        refresh_token = auth.get("refresh_token")
        expires_at = auth.get("expires_at")
        if not (auth.get("is_authenticated") and refresh_token and expires_at):
            return _SKIPPED
        if not should_refresh_token(expires_at, self.safety_margin_seconds, self._now_ms()):
            return _SKIPPED

        try:
            tokens = await self.refresh_fn(refresh_token)
            await self.sessions.save_by_id(
                session_id,
                merge_session_data(data, {"auth": auth_with_tokens(auth, tokens, self._now_ms())}),
            )
            return _REFRESHED
        except Exception as exc:
            logger.warning(
                "session_token_refresh_failed",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )

        try:
            await self.sessions.save_by_id(
                session_id,
                merge_session_data(data, {"auth": {**auth, "is_authenticated": False}}),
            )
        except ServiceError as exc:
            logger.error("session_mark_unauthenticated_failed", error=exc.message)
        return _FAILED
