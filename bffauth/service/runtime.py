from __future__ import annotations

from typing import Any, Optional

import httpx
from fastapi import Request

from bffauth.config import Settings
from bffauth.logging import get_logger
from bffauth.service.discovery import OpenIDDiscovery
from bffauth.service.oauth import OAuthAuthenticationService
from bffauth.service.route_policy import RoutePolicy
from bffauth.service.user_mapping import UserHandler
from bffauth.session.manager import SessionManager
from bffauth.storage.base import SessionStore
from bffauth.storage.factory import build_session_store

logger = get_logger(__name__)


class Runtime:
    """Holds the service instances for one FastAPI app.

    Built by ``create_app`` and stored on ``app.state.runtime``; nothing is
    looked up globally.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        user_handler: Optional[UserHandler] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        store: Optional[SessionStore] = None,
        redis_client: Any = None,
    ) -> None:
        self.settings = settings
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.http_timeout_seconds
        )
        self.store = store or build_session_store(settings, redis_client=redis_client)
        self.sessions = SessionManager(
            self.store,
            settings.session_secrets,
            cookie_name=settings.session_cookie_name,
            max_age_seconds=settings.session_max_age_seconds,
            secure=settings.cookie_secure,
            algorithm=settings.session_signing_algorithm,
        )
        self.discovery = OpenIDDiscovery(
            settings.issuer or "",
            self.http_client,
            ttl_seconds=settings.discovery_cache_ttl_seconds,
        )
        self.auth = OAuthAuthenticationService(
            settings,
            self.sessions,
            self.discovery,
            self.http_client,
            user_handler=user_handler,
        )
        self.route_policy = RoutePolicy(
            settings.unprotected_routes, settings.whitelist_file_types
        )
        logger.info(
            "runtime_initialized",
            storage=settings.session_storage.value,
            environment=settings.environment,
            cookie_secure=self.sessions.secure,
        )

    async def close(self) -> None:
        await self.auth.refresher.drain()
        await self.store.close()
        if self._owns_http_client:
            await self.http_client.aclose()


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency returning the app's runtime."""
    return request.app.state.runtime
