from __future__ import annotations

import hmac
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from bffauth.api.schemas import (
    AuthenticatedResponse,
    ProtectedDataResponse,
    RefreshTokensResponse,
)
from bffauth.logging import get_logger
from bffauth.service.errors import (
    AuthenticationError,
    ConfigurationError,
    ServerError,
    ServiceError,
)
from bffauth.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter()


@router.get("/login")
async def login(
    request: Request,
    redirect_url: Optional[str] = None,
    runtime: Runtime = Depends(get_runtime),
) -> RedirectResponse:
    if redirect_url is None:
        # keep the target remembered by the auth middleware
        session = await runtime.sessions.read(request) or {}
        redirect_url = session.get("redirect_url")
    url = await runtime.auth.start_login(request, redirect_url)
    return RedirectResponse(url, status_code=302)


@router.get("/callback")
async def callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    runtime: Runtime = Depends(get_runtime),
) -> RedirectResponse:
    if error:
        logger.warning("oauth_provider_error", provider_error=error)
    result = await runtime.auth.handle_callback(request, code, state)
    return RedirectResponse(result.redirect_url, status_code=302)


@router.get("/logout")
async def logout(request: Request, runtime: Runtime = Depends(get_runtime)) -> RedirectResponse:
    try:
        url = await runtime.auth.logout(request)
    except ServiceError as exc:
        logger.error("logout_failed", error=exc.message)
        raise ServerError("logout failed") from exc
    return RedirectResponse(url, status_code=302)


@router.get("/authenticated", response_model=AuthenticatedResponse)
async def authenticated(request: Request, runtime: Runtime = Depends(get_runtime)):
    return AuthenticatedResponse(authenticated=await runtime.auth.is_authenticated(request))


@router.get("/user")
async def user(request: Request, runtime: Runtime = Depends(get_runtime)) -> Any:
    current = await runtime.auth.get_authenticated_user(request)
    if current is None:
        raise AuthenticationError("not authenticated")
    return current


def _check_refresh_api_key(request: Request, runtime: Runtime) -> None:
    api_key = runtime.settings.token_refresh_api_key
    if not api_key:
        logger.error("token_refresh_api_key_missing")
        raise ConfigurationError("server configuration error")
    presented = request.headers.get("Authorization", "")
    if not hmac.compare_digest(presented.encode(), f"Bearer {api_key}".encode()):
        logger.warning("token_refresh_unauthorized")
        raise AuthenticationError("unauthorized")


@router.api_route(
    "/refresh-tokens", methods=["GET", "POST"], response_model=RefreshTokensResponse
)
async def refresh_tokens(request: Request, runtime: Runtime = Depends(get_runtime)):
    _check_refresh_api_key(request, runtime)
    summary = await runtime.auth.refresh_expiring_tokens()
    return RefreshTokensResponse(success=True, **summary.as_dict())


@router.get("/protected-data", response_model=ProtectedDataResponse)
async def protected_data(request: Request, runtime: Runtime = Depends(get_runtime)):
    current = await runtime.auth.get_authenticated_user(request)
    if current is None:
        raise AuthenticationError("not authenticated")
    return ProtectedDataResponse(
        message="This is protected data that requires authentication", user=current
    )
