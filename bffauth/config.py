from __future__ import annotations

import base64
import hashlib
import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bffauth.logging import get_logger
from bffauth.service.errors import ConfigurationError

logger = get_logger(__name__)


class SessionStorage(str, Enum):
    """Session store backends selectable through ``SESSION_STORAGE``."""

    MEMORY = "memory"
    REDIS = "redis"
    COOKIE = "cookie"


SUPPORTED_SIGNING_ALGORITHMS = ("sha256", "sha384", "sha512")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the auth layer, one env var per field."""

    # Identity provider
    issuer: str | None = env_field(None, "OAUTH_ISSUER")
    client_id: str | None = env_field(None, "OAUTH_CLIENT_ID")
    client_secret: str | None = env_field(None, "OAUTH_CLIENT_SECRET")
    callback_uri: str | None = env_field(None, "OAUTH_CALLBACK_URI")
    scope: str = env_field("openid profile email", "OAUTH_SCOPE")
    audience: str | None = env_field(None, "OAUTH_AUDIENCE")
    logout_url: str | None = env_field(
        None, "OAUTH_LOGOUT_URL", description="returnTo target after provider logout"
    )
    # Route protection
    unprotected_routes: list[str] = env_field([], "UNPROTECTED_ROUTES")
    whitelist_file_types: list[str] = env_field([], "WHITELIST_FILE_TYPES")
    # Token refresh
    token_refresh_api_key: str | None = env_field(None, "TOKEN_REFRESH_API_KEY")
    token_refresh_safety_margin_seconds: int = env_field(
        300, "TOKEN_REFRESH_SAFETY_MARGIN_SECONDS", ge=0
    )
    token_refresh_interval_seconds: int = env_field(
        0,
        "TOKEN_REFRESH_INTERVAL_SECONDS",
        ge=0,
        description="In-process bulk refresh period; 0 disables the loop",
    )
    discovery_cache_ttl_seconds: int = env_field(3600, "DISCOVERY_CACHE_TTL_SECONDS", ge=0)
    http_timeout_seconds: float = env_field(10.0, "HTTP_TIMEOUT_SECONDS", gt=0)
    userinfo_max_retries: int = env_field(3, "USERINFO_MAX_RETRIES", ge=1)
    # Session
    session_storage: SessionStorage = env_field(SessionStorage.MEMORY, "SESSION_STORAGE")
    session_secrets: list[str] = env_field(
        [], "SESSION_SECRET", description="Comma list; the first entry signs"
    )
    session_cookie_name: str = env_field("auth.session", "SESSION_COOKIE_NAME")
    session_max_age_seconds: int = env_field(86400, "SESSION_MAX_AGE_SECONDS", gt=0)
    session_cookie_secure: bool | None = env_field(None, "SESSION_COOKIE_SECURE")
    session_signing_algorithm: str = env_field("sha256", "SESSION_SIGNING_ALGORITHM")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field("auth-session", "REDIS_KEY_PREFIX")
    cookie_store_key: str | None = env_field(None, "COOKIE_STORE_KEY")
    # Application
    auth_route_prefix: str = env_field("/api/auth", "AUTH_ROUTE_PREFIX")
    environment: str = env_field("development", "ENVIRONMENT")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values and env_file_values[env_name] is not None:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("unprotected_routes", "whitelist_file_types", "session_secrets", mode="before")
    @classmethod
    def _parse_comma_list(cls, value: Any) -> list[str]:
        return _split_list(value)

    @field_validator("session_storage", mode="before")
    @classmethod
    def _validate_storage(cls, value: Any) -> SessionStorage:
        if isinstance(value, str):
            value = value.strip().lower()
        return SessionStorage(value)

    @field_validator("session_signing_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SUPPORTED_SIGNING_ALGORITHMS:
            raise ValueError(
                f"unsupported signing algorithm {value!r}; "
                f"expected one of {', '.join(SUPPORTED_SIGNING_ALGORITHMS)}"
            )
        return normalized

    @field_validator("auth_route_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = "/" + value.strip().strip("/")
        return value if value != "/" else ""

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def cookie_secure(self) -> bool:
        if self.session_cookie_secure is None:
            return self.is_production
        return self.session_cookie_secure

    @property
    def fernet_key(self) -> bytes:
        """Key for the cookie store; derived from the signing secret when unset."""
        if self.cookie_store_key:
            return self.cookie_store_key.encode()
        if not self.session_secrets:
            raise ConfigurationError("SESSION_SECRET is required to derive the cookie store key")
        digest = hashlib.sha256(self.session_secrets[0].encode()).digest()
        return base64.urlsafe_b64encode(digest)

    def validate_required(self) -> None:
        """Raise ``ConfigurationError`` naming every missing mandatory setting."""
        required = {
            "OAUTH_ISSUER": self.issuer,
            "OAUTH_CLIENT_ID": self.client_id,
            "OAUTH_CLIENT_SECRET": self.client_secret,
            "OAUTH_CALLBACK_URI": self.callback_uri,
        }
        missing = [name for name, value in required.items() if not value]
        if not self.session_secrets:
            missing.append("SESSION_SECRET")
        if missing:
            logger.error("configuration_missing", missing=missing)
            raise ConfigurationError(
                f"missing required configuration: {', '.join(missing)}",
                detail={"missing": missing},
            )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
