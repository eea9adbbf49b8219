from __future__ import annotations

import copy
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from bffauth.storage.base import SessionData, SessionStore


class MemorySessionStore(SessionStore):
    """Process-local session store with per-entry TTL.

    Payloads are deep-copied on the way in and out so callers never share a
    mutable dict with the store.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Tuple[float, SessionData]] = {}
        self._data_lock = threading.RLock()

    def _live(self, session_id: str) -> Optional[SessionData]:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        expires_at, data = entry
        if expires_at <= self._clock():
            self._entries.pop(session_id, None)
            return None
        return data

    async def get(self, session_id: str) -> Optional[SessionData]:
        with self._data_lock:
            data = self._live(session_id)
            return copy.deepcopy(data) if data is not None else None

    async def set(self, session_id: str, data: SessionData) -> None:
        with self._data_lock:
            self._entries[session_id] = (
                self._clock() + self.ttl_seconds,
                copy.deepcopy(data),
            )

    async def delete(self, session_id: str) -> None:
        with self._data_lock:
            self._entries.pop(session_id, None)

    async def list(self) -> List[Tuple[str, SessionData]]:
        with self._data_lock:
            result = []
            for session_id in list(self._entries):
                data = self._live(session_id)
                if data is not None:
                    result.append((session_id, copy.deepcopy(data)))
            return result

    async def touch(self, session_id: str, data: SessionData) -> None:
        with self._data_lock:
            if self._live(session_id) is not None:
                _, stored = self._entries[session_id]
                self._entries[session_id] = (self._clock() + self.ttl_seconds, stored)
                return
        await self.set(session_id, data)

    def __len__(self) -> int:
        with self._data_lock:
            return len(self._entries)
