from __future__ import annotations

import asyncio
import hmac
import inspect
import math
import secrets
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx
from fastapi import Request

from bffauth.config import Settings
from bffauth.logging import get_logger, sanitize_error_message
from bffauth.service.background import BackgroundRefresher
from bffauth.service.discovery import OpenIDConfiguration, OpenIDDiscovery
from bffauth.service.errors import (
    AuthorizationFlowError,
    RevocationError,
    ServiceError,
    TokenExchangeError,
    UserInfoError,
)
from bffauth.service.refresh_job import RefreshSummary, TokenRefreshJob
from bffauth.service.tokens import (
    TokenSet,
    auth_is_valid,
    auth_with_tokens,
    should_refresh_token,
)
from bffauth.service.user_mapping import UserHandler
from bffauth.session.manager import DELETE, SessionManager

logger = get_logger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 5
USERINFO_BACKOFF_SECONDS = 0.5


@dataclass(frozen=True)
class CallbackResult:
    user: Any
    tokens: TokenSet
    redirect_url: str = "/"


def sanitize_redirect_url(value: Optional[str]) -> Optional[str]:
    """Only same-origin relative paths are accepted as post-login targets."""
    if not value or not isinstance(value, str):
        return None
    if not value.startswith("/") or value.startswith("//") or "\\" in value:
        return None
    return value


def _parse_retry_after(raw: Optional[str]) -> float:
    if raw is None:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        seconds = float(raw.strip())
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS
    if not math.isfinite(seconds):
        return DEFAULT_RETRY_AFTER_SECONDS
    return max(0.0, seconds)


def _append_query(url: str, params: Dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class OAuthAuthenticationService:
    """Authorization-code login against an OpenID Connect provider.

    Tokens never leave the server: they live in the session under ``auth`` and
    only the signed session cookie reaches the browser.
    """

    def __init__(
        self,
        settings: Settings,
        sessions: SessionManager,
        discovery: OpenIDDiscovery,
        http_client: httpx.AsyncClient,
        *,
        user_handler: Optional[UserHandler] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.discovery = discovery
        self.http_client = http_client
        self.user_handler = user_handler
        self._clock = clock
        self._sleep = sleep
        self.refresher = BackgroundRefresher(self.refresh_tokens, sessions, clock=clock)
        self.refresh_job = TokenRefreshJob(
            self.refresh_tokens,
            sessions,
            safety_margin_seconds=settings.token_refresh_safety_margin_seconds,
            clock=clock,
        )

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # Session state machine

    async def is_authenticated(self, request: Request) -> bool:
        state = await self.sessions.init(request)
        auth = state.data.get("auth")
        if not isinstance(auth, dict):
            await self.sessions.update(request, lambda _: {"auth": {"is_authenticated": False}})
            return False
        if not auth.get("is_authenticated"):
            return False
        if not auth_is_valid(auth):
            logger.warning("session_auth_incomplete")
            return False

        expires_at = auth["expires_at"]
        refresh_token = auth.get("refresh_token")
        if expires_at < self._now_ms():
            if not refresh_token:
                logger.info("access_token_expired_no_refresh_token")
                return False
            try:
                tokens = await self.refresh_tokens(refresh_token)
            except ServiceError as exc:
                logger.warning(
                    "blocking_refresh_failed", error_type=type(exc).__name__, error=exc.message
                )
                await self.sessions.update(
                    request,
                    lambda data: {"auth": {**(data.get("auth") or {}), "is_authenticated": False}},
                )
                return False
            await self.sessions.update(
                request,
                lambda data: {"auth": auth_with_tokens(data.get("auth") or {}, tokens, self._now_ms())},
            )
            logger.info("access_token_refreshed", mode="blocking")
            return True

        if refresh_token and should_refresh_token(
            expires_at, self.settings.token_refresh_safety_margin_seconds, self._now_ms()
        ):
            self.refresher.schedule(state.id, refresh_token)
        return True

    # Login round trip

    async def get_authorization_url(self, state: str) -> str:
        self.settings.validate_required()
        config = await self.discovery.get_configuration()
        params = {
            "response_type": "code",
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.callback_uri,
            "scope": self.settings.scope,
            "state": state,
        }
        if self.settings.audience:
            params["audience"] = self.settings.audience
        return _append_query(config.authorization_endpoint, params)

    async def start_login(self, request: Request, redirect_url: Optional[str] = None) -> str:
        state = secrets.token_urlsafe(32)
        target = sanitize_redirect_url(redirect_url)
        await self.sessions.update(
            request,
            lambda _: {"state": state, "redirect_url": target if target else DELETE},
        )
        return await self.get_authorization_url(state)

    async def handle_callback(self, request: Request, code: Optional[str], state: Optional[str]) -> CallbackResult:
        session = await self.sessions.init(request)
        expected = session.data.get("state")
        if (
            not state
            or not isinstance(expected, str)
            or not expected
            or not hmac.compare_digest(state.encode(), expected.encode())
        ):
            logger.warning(
                "oauth_state_rejected", state_present=bool(state), session_state_present=bool(expected)
            )
            raise AuthorizationFlowError("authorization failed")

        await self.sessions.update(request, lambda _: {"state": DELETE})
        if not code:
            raise AuthorizationFlowError("authorization failed", detail={"reason": "missing_code"})

        tokens = await self.exchange_code(code)
        user_info = await self.get_user_info(tokens.access_token)
        user: Any = user_info
        if self.user_handler is not None and hasattr(self.user_handler, "create_or_update_user"):
            user = await _maybe_await(self.user_handler.create_or_update_user(user_info))

        auth = {
            "is_authenticated": True,
            "access_token": tokens.access_token,
            "id_token": tokens.id_token,
            "refresh_token": tokens.refresh_token,
            "expires_at": self._now_ms() + tokens.expires_in * 1000,
            "user_info": user_info,
        }
        redirect_url = sanitize_redirect_url(session.data.get("redirect_url")) or "/"
        await self.sessions.update(
            request, lambda _: {"user": user, "auth": auth, "redirect_url": DELETE}
        )
        await self.sessions.regenerate(request)
        logger.info("login_completed", subject=user_info.get("sub") or user_info.get("id"))
        return CallbackResult(user=user, tokens=tokens, redirect_url=redirect_url)

    # Provider calls

    async def _token_request(self, form: Dict[str, str], failure_message: str, event: str) -> TokenSet:
        config = await self.discovery.get_configuration()
        data = {
            "client_id": self.settings.client_id or "",
            "client_secret": self.settings.client_secret or "",
            **form,
        }
        try:
            response = await self.http_client.post(
                config.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.error(event, error_type=type(exc).__name__, error=sanitize_error_message(str(exc)))
            raise TokenExchangeError(failure_message) from exc
        if not response.is_success:
            provider_error = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    provider_error = body.get("error")
            except ValueError:
                provider_error = None
            logger.error(event, status_code=response.status_code, provider_error=provider_error)
            raise TokenExchangeError(failure_message)
        try:
            payload = response.json()
        except ValueError as exc:
            logger.error(event, reason="invalid_json")
            raise TokenExchangeError(failure_message) from exc
        return TokenSet.from_response(payload)

    async def exchange_code(self, code: str) -> TokenSet:
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.callback_uri or "",
            },
            "failed to exchange authorization code",
            "code_exchange_failed",
        )

    async def refresh_tokens(self, refresh_token: str) -> TokenSet:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "failed to refresh token",
            "token_refresh_failed",
        )

    async def get_user_info(self, access_token: str, max_retries: Optional[int] = None) -> Dict[str, Any]:
        """Fetch the provider's user-info claims.

        401 is final. 429 waits ``Retry-After`` seconds; 5xx and transport
        errors back off exponentially. Other statuses are not retried.
        """
        if max_retries is None:
            max_retries = self.settings.userinfo_max_retries
        attempts = max(1, max_retries)
        config = await self.discovery.get_configuration()
        if not config.userinfo_endpoint:
            raise UserInfoError("provider does not advertise a userinfo endpoint")

        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            delay = USERINFO_BACKOFF_SECONDS * 2 ** (attempt - 1)
            try:
                response = await self.http_client.get(
                    config.userinfo_endpoint,
                    headers={"Authorization": f"Bearer {access_token}"},
                    timeout=self.settings.http_timeout_seconds,
                )
            except httpx.HTTPError as exc:
                last_error = exc
                logger.warning(
                    "userinfo_network_error",
                    attempt=attempt,
                    max_retries=attempts,
                    error_type=type(exc).__name__,
                )
                if attempt < attempts:
                    await self._sleep(delay)
                continue

            if response.status_code == 401:
                raise UserInfoError(
                    "authentication token is invalid or expired",
                    status_code=401,
                    error_code="unauthorized",
                )
            if response.status_code == 429:
                last_error = UserInfoError("user info rate limited", retryable=True, status_code=429)
                logger.warning("userinfo_rate_limited", attempt=attempt, max_retries=attempts)
                if attempt < attempts:
                    await self._sleep(_parse_retry_after(response.headers.get("Retry-After")))
                continue
            if response.status_code >= 500:
                last_error = UserInfoError(
                    "user info provider error", retryable=True, detail={"status_code": response.status_code}
                )
                logger.warning(
                    "userinfo_server_error",
                    attempt=attempt,
                    max_retries=attempts,
                    status_code=response.status_code,
                )
                if attempt < attempts:
                    await self._sleep(delay)
                continue
            if not response.is_success:
                logger.error("userinfo_rejected", status_code=response.status_code)
                raise UserInfoError(
                    "failed to get user info",
                    status_code=response.status_code,
                    error_code="user_info_failed",
                )

            try:
                user_info = response.json()
            except ValueError as exc:
                raise UserInfoError("invalid user data received from provider") from exc
            if not isinstance(user_info, dict) or not (user_info.get("sub") or user_info.get("id")):
                raise UserInfoError("invalid user data received from provider")
            return user_info

        logger.error("userinfo_retries_exhausted", max_retries=attempts)
        raise UserInfoError("failed to get user info after multiple attempts") from last_error

    async def revoke_token(self, token: str, config: Optional[OpenIDConfiguration] = None) -> None:
        config = config or await self.discovery.get_configuration()
        if not config.revocation_endpoint:
            logger.debug("token_revocation_skipped", reason="no_revocation_endpoint")
            return
        try:
            response = await self.http_client.post(
                config.revocation_endpoint,
                data={
                    "client_id": self.settings.client_id or "",
                    "client_secret": self.settings.client_secret or "",
                    "token": token,
                },
            )
        except httpx.HTTPError as exc:
            raise RevocationError("token revocation failed") from exc
        if not response.is_success:
            raise RevocationError(
                "token revocation failed", detail={"status_code": response.status_code}
            )

    # Session-level operations

    async def get_authenticated_user(self, request: Request) -> Any:
        if not await self.is_authenticated(request):
            return None
        data = await self.sessions.read(request) or {}
        user_info = (data.get("auth") or {}).get("user_info")
        if self.user_handler is not None and hasattr(self.user_handler, "map_user_to_local"):
            return await _maybe_await(self.user_handler.map_user_to_local(user_info))
        return user_info

    async def logout(self, request: Request) -> str:
        state = await self.sessions.init(request)
        auth = state.data.get("auth") or {}
        config = await self.discovery.get_configuration()

        for hint in ("access_token", "refresh_token"):
            token = auth.get(hint)
            if not token:
                continue
            try:
                await self.revoke_token(token, config)
            except RevocationError as exc:
                logger.error("token_revocation_failed", hint=hint, error=exc.message, detail=exc.detail)

        if config.end_session_endpoint:
            params = {"client_id": self.settings.client_id or ""}
            if self.settings.logout_url:
                params["returnTo"] = self.settings.logout_url
            logout_url = _append_query(config.end_session_endpoint, params)
        else:
            logout_url = self.settings.logout_url or "/"

        await self.sessions.update(
            request, lambda _: {"auth": {"is_authenticated": False}, "user": None}
        )
        logger.info("logout_completed")
        return logout_url

    async def refresh_expiring_tokens(self) -> RefreshSummary:
        return await self.refresh_job.run()
