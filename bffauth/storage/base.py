from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

SessionData = Dict[str, Any]


class SessionStore(ABC):
    """Key-value backend for session payloads.

    ``cookie_value``/``load`` decide what travels in the cookie: server-side
    stores put the session id there, client-side stores the whole session.
    """

    #: True when the session lives in the cookie and nothing is kept server-side.
    client_side: bool = False

    def __init__(self, *, ttl_seconds: int = 86400) -> None:
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    async def get(self, session_id: str) -> Optional[SessionData]:
        ...

    @abstractmethod
    async def set(self, session_id: str, data: SessionData) -> None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def list(self) -> List[Tuple[str, SessionData]]:
        """Return ``(session_id, data)`` pairs for every live session."""

    async def touch(self, session_id: str, data: SessionData) -> None:
        await self.set(session_id, data)

    def cookie_value(self, session_id: str, data: SessionData) -> str:
        return session_id

    async def load(self, cookie_value: str) -> Tuple[str, Optional[SessionData]]:
        return cookie_value, await self.get(cookie_value)

    async def close(self) -> None:
        return None
