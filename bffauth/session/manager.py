from __future__ import annotations

import copy
import secrets
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar
from urllib.parse import quote, unquote

from fastapi import Request, Response

from bffauth.logging import get_logger
from bffauth.service.errors import ServiceError, SessionStorageError
from bffauth.session.signing import sign, unsign
from bffauth.storage.base import SessionData, SessionStore

logger = get_logger(__name__)

T = TypeVar("T")

_STATE_ATTR = "bffauth_session"


class _Delete:
    def __repr__(self) -> str:
        return "DELETE"


#: Marker value for :meth:`SessionManager.update` that removes a top-level key.
DELETE: Any = _Delete()


def default_session_data() -> SessionData:
    return {"auth": {"is_authenticated": False}}


def merge_session_data(current: Mapping[str, Any], changes: Mapping[str, Any]) -> SessionData:
    """Shallow merge of top-level keys; ``DELETE`` values remove the key."""
    merged = copy.deepcopy(dict(current))
    for key, value in changes.items():
        if value is DELETE:
            merged.pop(key, None)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass(frozen=True)
class SessionState:
    id: str
    data: SessionData = field(default_factory=default_session_data)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass
class _RequestSession:
    state: Optional[SessionState]
    is_new: bool = False
    dirty: bool = False
    destroyed: bool = False


class SessionManager:
    """Signed-cookie sessions on top of a :class:`SessionStore`.

    The session for a request is loaded once by :meth:`init` and cached on
    ``request.state``; every mutation persists to the store immediately and marks
    the cookie for re-issue, which :meth:`commit` writes onto the response.
    """

    def __init__(
        self,
        store: SessionStore,
        secrets_: Sequence[str],
        *,
        cookie_name: str = "auth.session",
        max_age_seconds: int = 86400,
        secure: bool = False,
        same_site: str = "lax",
        algorithm: str = "sha256",
    ) -> None:
        if not secrets_:
            raise ValueError("at least one session secret is required")
        self.store = store
        self.secrets = list(secrets_)
        self.cookie_name = cookie_name
        self.max_age_seconds = max_age_seconds
        self.secure = secure
        self.same_site = same_site
        self.algorithm = algorithm

    @staticmethod
    def generate_id() -> str:
        return secrets.token_urlsafe(32)

    async def _io(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except ServiceError:
            raise
        except Exception as exc:
            logger.error(
                "session_store_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise SessionStorageError(
                "session handling failed", detail={"operation": operation}
            ) from exc

    def _context(self, request: Request) -> Optional[_RequestSession]:
        return getattr(request.state, _STATE_ATTR, None)

    async def _load_from_cookie(self, request: Request) -> tuple[Optional[str], Optional[SessionData]]:
        raw = request.cookies.get(self.cookie_name)
        if not raw:
            return None, None
        result = unsign(unquote(raw), self.secrets, self.algorithm)
        if not result.success:
            logger.info("session_cookie_rejected", reason=result.reason.value)
            return None, None
        session_id, data = await self._io("load", self.store.load(result.value))
        if not session_id or data is None:
            return None, None
        return session_id, data

    async def init(self, request: Request) -> SessionState:
        """Load or create the session for this request. Idempotent per request."""
        ctx = self._context(request)
        if ctx is not None and ctx.state is not None:
            return ctx.state

        if ctx is not None and ctx.destroyed:
            session_id, data = None, None
        else:
            session_id, data = await self._load_from_cookie(request)
        if data is None:
            state = SessionState(self.generate_id(), default_session_data())
            await self._io("set", self.store.set(state.id, state.data))
            logger.debug("session_created")
            ctx = _RequestSession(state=state, is_new=True, dirty=True)
        else:
            state = SessionState(session_id, data)
            await self._io("touch", self.store.touch(state.id, state.data))
            # rolling expiry: the cookie is re-issued on every response
            ctx = _RequestSession(state=state, dirty=True)
        setattr(request.state, _STATE_ATTR, ctx)
        return state

    async def read(self, request: Request) -> Optional[SessionData]:
        ctx = self._context(request)
        if ctx is not None and ctx.destroyed:
            return None
        return (await self.init(request)).data

    async def _persist(self, request: Request, state: SessionState) -> SessionState:
        await self._io("set", self.store.set(state.id, state.data))
        ctx = self._context(request)
        ctx.state = state
        ctx.dirty = True
        ctx.destroyed = False
        return state

    async def update(
        self,
        request: Request,
        merge_fn: Callable[[SessionData], Mapping[str, Any]],
    ) -> SessionState:
        current = await self.init(request)
        changes = merge_fn(copy.deepcopy(current.data))
        return await self._persist(
            request, SessionState(current.id, merge_session_data(current.data, changes))
        )

    async def replace(self, request: Request, data: Mapping[str, Any]) -> SessionState:
        current = await self.init(request)
        return await self._persist(request, SessionState(current.id, copy.deepcopy(dict(data))))

    async def regenerate(self, request: Request) -> SessionState:
        """Move the current data to a fresh id and drop the old one."""
        current = await self.init(request)
        state = SessionState(self.generate_id(), copy.deepcopy(current.data))
        await self._io("set", self.store.set(state.id, state.data))
        await self._io("delete", self.store.delete(current.id))
        ctx = self._context(request)
        ctx.state = state
        ctx.dirty = True
        logger.debug("session_regenerated")
        return state

    async def destroy(self, request: Request) -> None:
        ctx = self._context(request)
        if ctx is None:
            await self.init(request)
            ctx = self._context(request)
        if ctx.state is not None:
            await self._io("delete", self.store.delete(ctx.state.id))
        ctx.state = None
        ctx.destroyed = True
        ctx.dirty = True

    def commit(self, request: Request, response: Response) -> None:
        """Write ``Set-Cookie`` for sessions touched during this request."""
        ctx = self._context(request)
        if ctx is None or not ctx.dirty:
            return
        if ctx.destroyed or ctx.state is None:
            response.delete_cookie(
                self.cookie_name,
                path="/",
                secure=self.secure,
                httponly=True,
                samesite=self.same_site,
            )
            return
        payload = self.store.cookie_value(ctx.state.id, ctx.state.data)
        response.set_cookie(
            self.cookie_name,
            quote(sign(payload, self.secrets[0], self.algorithm), safe=""),
            max_age=self.max_age_seconds,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite=self.same_site,
        )

    # Out-of-request access, used by background and bulk refresh.

    async def load_by_id(self, session_id: str) -> Optional[SessionData]:
        return await self._io("get", self.store.get(session_id))

    async def save_by_id(self, session_id: str, data: SessionData) -> None:
        await self._io("set", self.store.set(session_id, data))

    async def list_sessions(self) -> list[tuple[str, SessionData]]:
        return await self._io("list", self.store.list())


__all__ = [
    "DELETE",
    "SessionManager",
    "SessionState",
    "default_session_data",
    "merge_session_data",
]
