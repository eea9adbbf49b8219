from __future__ import annotations

import json
from typing import List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from bffauth.logging import get_logger
from bffauth.service.errors import SessionStorageError
from bffauth.storage.base import SessionData, SessionStore

logger = get_logger(__name__)


class CookieSessionStore(SessionStore):
    """Keeps the whole session in the cookie, encrypted with Fernet.

    Nothing is held server-side, so ``get``/``set``/``delete`` are no-ops and the
    store cannot enumerate sessions. Tokens are encrypted, not just signed.
    """

    client_side = True

    def __init__(self, key: bytes, *, ttl_seconds: int = 86400) -> None:
        super().__init__(ttl_seconds=ttl_seconds)
        self._cipher = Fernet(key)

    async def get(self, session_id: str) -> Optional[SessionData]:
        return None

    async def set(self, session_id: str, data: SessionData) -> None:
        return None

    async def delete(self, session_id: str) -> None:
        return None

    async def touch(self, session_id: str, data: SessionData) -> None:
        return None

    async def list(self) -> List[Tuple[str, SessionData]]:
        raise SessionStorageError(
            "cookie session storage cannot list sessions",
            detail={"storage": "cookie"},
        )

    def cookie_value(self, session_id: str, data: SessionData) -> str:
        payload = json.dumps({"id": session_id, "data": data}, separators=(",", ":"))
        return self._cipher.encrypt(payload.encode("utf-8")).decode("ascii")

    async def load(self, cookie_value: str) -> Tuple[str, Optional[SessionData]]:
        try:
            raw = self._cipher.decrypt(cookie_value.encode("ascii"), ttl=self.ttl_seconds)
            payload = json.loads(raw)
        except (InvalidToken, UnicodeError, ValueError):
            logger.info("cookie_session_rejected")
            return "", None
        session_id = payload.get("id") if isinstance(payload, dict) else None
        data = payload.get("data") if isinstance(payload, dict) else None
        if not session_id or not isinstance(data, dict):
            return "", None
        return session_id, data
