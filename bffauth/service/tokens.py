from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from bffauth.service.errors import TokenExchangeError


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    expires_in: int
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @classmethod
    def from_response(cls, payload: Any) -> "TokenSet":
        if not isinstance(payload, Mapping) or not payload.get("access_token"):
            raise TokenExchangeError("token response did not include an access token")
        try:
            expires_in = int(payload.get("expires_in") or 0)
        except (TypeError, ValueError):
            raise TokenExchangeError("token response had an invalid expires_in") from None
        return cls(
            access_token=str(payload["access_token"]),
            expires_in=expires_in,
            id_token=payload.get("id_token"),
            refresh_token=payload.get("refresh_token"),
        )


def should_refresh_token(expires_at: int, safety_margin_seconds: int, now_ms: int) -> bool:
    """True when ``expires_at`` (epoch ms) falls inside the safety margin."""
    return now_ms + safety_margin_seconds * 1000 > expires_at


def auth_with_tokens(auth: Mapping[str, Any], tokens: TokenSet, now_ms: int) -> Dict[str, Any]:
    """Return a new ``auth`` mapping carrying ``tokens``.

    Providers may omit ``refresh_token`` or ``id_token`` on refresh; the stored
    values are kept in that case.
    """
    updated = dict(auth)
    updated.update(
        is_authenticated=True,
        access_token=tokens.access_token,
        id_token=tokens.id_token or auth.get("id_token"),
        refresh_token=tokens.refresh_token or auth.get("refresh_token"),
        expires_at=now_ms + tokens.expires_in * 1000,
    )
    return updated


def auth_is_valid(auth: Any) -> bool:
    """Authenticated sessions must carry an access token and an expiry."""
    return (
        isinstance(auth, Mapping)
        and bool(auth.get("is_authenticated"))
        and bool(auth.get("access_token"))
        and auth.get("expires_at") is not None
    )
