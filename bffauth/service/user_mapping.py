from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel

IdentityProvider = Literal["keycloak", "auth0", "unknown"]


class UserHandler(Protocol):
    """Application hook turning provider claims into a local user.

    Either method may be a coroutine function.
    """

    def create_or_update_user(self, user_info: Dict[str, Any]) -> Any:
        ...

    def map_user_to_local(self, user_info: Dict[str, Any]) -> Any:
        ...


class LocalUser(BaseModel):
    username: str = ""
    full_name: str = ""
    given_name: str = ""
    family_name: str = ""
    picture: Optional[str] = None
    email: Optional[str] = None
    email_verified: Optional[bool] = None
    locale: Optional[str] = None
    last_login: Optional[str] = None
    updated_at: Optional[str] = None
    created_at: Optional[str] = None
    auth_id: Optional[str] = None
    roles: List[str] = []


def detect_provider(user_info: Optional[Dict[str, Any]]) -> IdentityProvider:
    if not user_info:
        return "unknown"
    if user_info.get("realm_access") or user_info.get("resource_access"):
        return "keycloak"
    if any(key in user_info for key in ("nickname", "user_metadata", "app_metadata")):
        return "auth0"
    issuer = user_info.get("iss")
    if isinstance(issuer, str):
        if "auth0.com" in issuer:
            return "auth0"
        if "/auth/realms" in issuer:
            return "keycloak"
    return "unknown"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _from_keycloak(claims: Dict[str, Any]) -> LocalUser:
    realm_access = claims.get("realm_access") or {}
    return LocalUser(
        username=claims.get("preferred_username") or "",
        full_name=claims.get("name") or "",
        given_name=claims.get("given_name") or "",
        family_name=claims.get("family_name") or "",
        email=claims.get("email"),
        email_verified=claims.get("email_verified"),
        last_login=_now_iso(),
        auth_id=claims.get("sub"),
        roles=list(realm_access.get("roles") or []),
    )


def _from_auth0(claims: Dict[str, Any]) -> LocalUser:
    app_metadata = claims.get("app_metadata") or {}
    return LocalUser(
        username=claims.get("nickname") or claims.get("email") or "",
        full_name=claims.get("name") or "",
        given_name=claims.get("given_name") or "",
        family_name=claims.get("family_name") or "",
        picture=claims.get("picture"),
        email=claims.get("email"),
        email_verified=claims.get("email_verified"),
        locale=claims.get("locale"),
        last_login=claims.get("last_login"),
        updated_at=claims.get("updated_at"),
        created_at=claims.get("created_at"),
        auth_id=claims.get("sub"),
        roles=list(claims.get("roles") or app_metadata.get("roles") or []),
    )


def _from_oidc(claims: Dict[str, Any]) -> LocalUser:
    return LocalUser(
        username=(
            claims.get("preferred_username")
            or claims.get("nickname")
            or claims.get("email")
            or claims.get("sub")
            or ""
        ),
        full_name=claims.get("name") or "",
        given_name=claims.get("given_name") or "",
        family_name=claims.get("family_name") or "",
        picture=claims.get("picture"),
        email=claims.get("email"),
        email_verified=claims.get("email_verified"),
        locale=claims.get("locale"),
        last_login=claims.get("last_login") or _now_iso(),
        updated_at=claims.get("updated_at"),
        created_at=claims.get("created_at"),
        auth_id=claims.get("sub"),
        roles=list(claims.get("roles") or []),
    )


def transform_user_from_provider(user_info: Dict[str, Any]) -> LocalUser:
    provider = detect_provider(user_info)
    if provider == "keycloak":
        return _from_keycloak(user_info)
    if provider == "auth0":
        return _from_auth0(user_info)
    return _from_oidc(user_info)


class ClaimsUserHandler:
    """Default user handler: no persistence, claims mapped by provider shape."""

    def create_or_update_user(self, user_info: Dict[str, Any]) -> Dict[str, Any]:
        return self.map_user_to_local(user_info)

    def map_user_to_local(self, user_info: Dict[str, Any]) -> Dict[str, Any]:
        return transform_user_from_provider(user_info).model_dump()
