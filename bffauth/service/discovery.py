from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict

from bffauth.logging import get_logger
from bffauth.service.errors import DiscoveryError

logger = get_logger(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"


class OpenIDConfiguration(BaseModel):
    """Subset of the discovery document the auth layer uses."""

    model_config = ConfigDict(extra="allow", frozen=True)

    issuer: Optional[str] = None
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: Optional[str] = None
    end_session_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None


class OpenIDDiscovery:
    """Fetches and caches ``<issuer>/.well-known/openid-configuration``."""

    def __init__(
        self,
        issuer: str,
        http_client: httpx.AsyncClient,
        *,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.issuer = issuer.rstrip("/")
        self.http_client = http_client
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, tuple[float, OpenIDConfiguration]] = {}
        self._lock = asyncio.Lock()

    @property
    def url(self) -> str:
        return f"{self.issuer}{WELL_KNOWN_PATH}"

    def _cached(self) -> Optional[OpenIDConfiguration]:
        entry = self._cache.get(self.issuer)
        if entry is None:
            return None
        fetched_at, config = entry
        if self._clock() - fetched_at >= self.ttl_seconds:
            return None
        return config

    async def get_configuration(self) -> OpenIDConfiguration:
        cached = self._cached()
        if cached is not None:
            return cached
        async with self._lock:
            cached = self._cached()
            if cached is not None:
                return cached
            config = await self._fetch()
            self._cache[self.issuer] = (self._clock(), config)
            return config

    async def _fetch(self) -> OpenIDConfiguration:
        try:
            response = await self.http_client.get(self.url)
        except httpx.HTTPError as exc:
            logger.error("discovery_request_failed", issuer=self.issuer, error=str(exc))
            raise DiscoveryError("failed to fetch configuration") from exc
        if not response.is_success:
            logger.error(
                "discovery_bad_status", issuer=self.issuer, status_code=response.status_code
            )
            raise DiscoveryError(
                "failed to fetch configuration",
                detail={"status_code": response.status_code},
            )
        try:
            payload: Any = response.json()
            config = OpenIDConfiguration.model_validate(payload)
        except ValueError as exc:
            logger.error("discovery_invalid_document", issuer=self.issuer, error=str(exc))
            raise DiscoveryError("failed to fetch configuration") from exc
        logger.info("discovery_loaded", issuer=self.issuer)
        return config

    def clear(self) -> None:
        self._cache.clear()
