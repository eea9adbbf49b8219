from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` rendered into the error envelope:
    - authorization_failed (400)
    - unauthorized (401)
    - configuration_error (500)
    - session_error (500)
    - discovery_error (500)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(ServiceError):
    """Mandatory settings are missing or invalid (500)."""
    status_code = 500
    error_code = "configuration_error"


class AuthorizationFlowError(ServiceError):
    """Login round trip failed, e.g. missing or mismatched state (400)."""
    status_code = 400
    error_code = "authorization_failed"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenExchangeError(AuthenticationError):
    """The provider rejected an authorization code or refresh token (401)."""
    pass


class UserInfoError(ServiceError):
    """Fetching user info failed.

    ``retryable`` tells the retry loop whether another attempt makes sense.
    """

    status_code = 500
    error_code = "server_error"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(
            message, status_code=status_code, detail=detail, error_code=error_code
        )
        self.retryable = retryable


class SessionStorageError(ServiceError):
    """Session store I/O failed (500)."""
    status_code = 500
    error_code = "session_error"


class RevocationError(ServiceError):
    """Token revocation failed. Logged, never surfaced to clients."""
    status_code = 500
    error_code = "server_error"


class DiscoveryError(ServiceError):
    """OpenID configuration could not be fetched (500)."""
    status_code = 500
    error_code = "discovery_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ConfigurationError",
    "AuthorizationFlowError",
    "AuthenticationError",
    "TokenExchangeError",
    "UserInfoError",
    "SessionStorageError",
    "RevocationError",
    "DiscoveryError",
    "ServerError",
]
