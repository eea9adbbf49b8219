from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from fastapi import FastAPI

from bffauth.api.error_handling import register_exception_handlers
from bffauth.api.middleware import install_middleware
from bffauth.api.routes import router
from bffauth.config import Settings, get_settings
from bffauth.logging import get_logger
from bffauth.service.oauth import OAuthAuthenticationService
from bffauth.service.runtime import Runtime
from bffauth.service.user_mapping import UserHandler

logger = get_logger(__name__)

__version__ = "0.1.0"


async def _run_periodic_refresh(auth: OAuthAuthenticationService, interval_seconds: int) -> None:
    """Run the bulk token refresh every ``interval_seconds`` until cancelled."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await auth.refresh_expiring_tokens()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("periodic_token_refresh_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("periodic_token_refresh_cancelled")


def _build_lifespan(runtime: Runtime):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        refresh_task: asyncio.Task | None = None
        interval = runtime.settings.token_refresh_interval_seconds
        if interval > 0 and not runtime.store.client_side:
            refresh_task = asyncio.create_task(_run_periodic_refresh(runtime.auth, interval))
            logger.info("periodic_token_refresh_started", interval_seconds=interval)

        yield

        if refresh_task:
            refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await refresh_task
        try:
            await runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    return lifespan


def create_app(
    settings: Optional[Settings] = None,
    *,
    user_handler: Optional[UserHandler] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    redis_client: Any = None,
) -> FastAPI:
    """Build the auth application.

    ``uvicorn bffauth.app:create_app --factory`` serves it with settings from the
    environment.
    """
    settings = settings or get_settings()
    settings.validate_required()

    runtime = Runtime(
        settings,
        user_handler=user_handler,
        http_client=http_client,
        redis_client=redis_client,
    )
    app = FastAPI(title="bffauth", version=__version__, lifespan=_build_lifespan(runtime))
    app.state.runtime = runtime

    install_middleware(app)
    register_exception_handlers(app)
    app.include_router(router, prefix=settings.auth_route_prefix)
    return app
