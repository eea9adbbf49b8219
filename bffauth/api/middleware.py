from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse

from bffauth.api.error_handling import service_error_response
from bffauth.logging import get_logger, set_correlation_id
from bffauth.service.errors import AuthenticationError, ServiceError
from bffauth.service.oauth import sanitize_redirect_url

logger = get_logger(__name__)

# Auth routes reachable without a session
PUBLIC_AUTH_ROUTES = ("login", "callback", "authenticated", "refresh-tokens")


def _is_public(request: Request) -> bool:
    runtime = request.app.state.runtime
    path = request.url.path
    prefix = runtime.settings.auth_route_prefix
    if any(path.startswith(f"{prefix}/{name}") for name in PUBLIC_AUTH_ROUTES):
        return True
    return runtime.route_policy.is_unprotected_route(path)


def _wants_json(request: Request) -> bool:
    return request.headers.get("fetch", "").lower() == "true"


def install_middleware(app: FastAPI) -> None:
    """Register auth, session-cookie and correlation-id middleware.

    Starlette runs the last registered middleware first, so requests pass
    correlation id -> session commit -> auth check -> route.
    """

    @app.middleware("http")
    async def require_authentication(request: Request, call_next):
        if _is_public(request):
            return await call_next(request)

        runtime = request.app.state.runtime
        try:
            authenticated = await runtime.auth.is_authenticated(request)
            if authenticated:
                return await call_next(request)

            if _wants_json(request):
                raise AuthenticationError("user is not authenticated")

            if request.method == "GET":
                target = request.url.path
                if request.url.query:
                    target = f"{target}?{request.url.query}"
                target = sanitize_redirect_url(target)
                if target:
                    await runtime.sessions.update(request, lambda _: {"redirect_url": target})
        except ServiceError as exc:
            return service_error_response(request, exc)

        logger.debug("login_redirect", path=request.url.path)
        return RedirectResponse(f"{runtime.settings.auth_route_prefix}/login", status_code=302)

    @app.middleware("http")
    async def commit_session(request: Request, call_next):
        response = await call_next(request)
        request.app.state.runtime.sessions.commit(request, response)
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Take X-Request-ID from the client or generate one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response
