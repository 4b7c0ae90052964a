"""
Error taxonomy for the OAuth integration token lifecycle.

Every failure surfaced by this package is one of a closed set of kinds. Each
kind has exactly one exception class, and every instance carries its kind as
the ``kind`` discriminant so callers can branch with ``match err.kind`` (or
serialize ``err.to_dict()``) instead of walking a class hierarchy:

    try:
        token = await service.get_valid_token(user_id, "google")
    except OAuthError as err:
        match err.kind:
            case OAuthErrorKind.INSUFFICIENT_SCOPE:
                ...  # ask for incremental consent
            case OAuthErrorKind.DATABASE:
                ...  # retry later
            case _:
                ...  # prompt re-authorization

Only ``OAuthDatabaseError`` is retryable; the token errors are user-actionable.
"""

from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Optional


class OAuthErrorKind(str, Enum):
    """Discriminant for the closed set of OAuth failures."""

    CONFIG = "config"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REFRESH = "token_refresh"
    INSUFFICIENT_SCOPE = "insufficient_scope"
    DATABASE = "database"


class CallerAction(str, Enum):
    """What the caller of the facade is expected to do with a failure."""

    FIX_CONFIGURATION = "fix_configuration"
    REAUTHORIZE = "reauthorize"
    INCREMENTAL_CONSENT = "incremental_consent"
    RETRY_LATER = "retry_later"


_ACTIONS = {
    OAuthErrorKind.CONFIG: CallerAction.FIX_CONFIGURATION,
    OAuthErrorKind.TOKEN_NOT_FOUND: CallerAction.REAUTHORIZE,
    OAuthErrorKind.TOKEN_EXPIRED: CallerAction.REAUTHORIZE,
    OAuthErrorKind.TOKEN_REFRESH: CallerAction.REAUTHORIZE,
    OAuthErrorKind.INSUFFICIENT_SCOPE: CallerAction.INCREMENTAL_CONSENT,
    OAuthErrorKind.DATABASE: CallerAction.RETRY_LATER,
}


def _provider_name(provider: Any) -> str:
    return getattr(provider, "value", provider)


class OAuthError(Exception):
    """Base for all OAuth lifecycle failures. Never raised directly."""

    kind: ClassVar[OAuthErrorKind]

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def action(self) -> CallerAction:
        """Caller-visible action for this failure."""
        return _ACTIONS[self.kind]

    @property
    def requires_reauthorization(self) -> bool:
        return self.action is CallerAction.REAUTHORIZE

    @property
    def retryable(self) -> bool:
        return self.kind is OAuthErrorKind.DATABASE

    def details(self) -> Dict[str, Any]:
        """Kind-specific fields, JSON-safe."""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for calling functions (HTTP handlers, jobs)."""
        return {
            "kind": self.kind.value,
            "action": self.action.value,
            "message": self.message,
            **self.details(),
        }


class OAuthConfigError(OAuthError):
    """Required provider credentials or configuration are missing."""

    kind = OAuthErrorKind.CONFIG


class TokenNotFoundError(OAuthError):
    """No integration exists for the user and provider."""

    kind = OAuthErrorKind.TOKEN_NOT_FOUND

    def __init__(self, user_id: str, provider: Any):
        self.user_id = user_id
        self.provider = _provider_name(provider)
        super().__init__(
            f"No OAuth token found for user {user_id} with provider {self.provider}"
        )

    def details(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "provider": self.provider}


class TokenExpiredError(OAuthError):
    """The access token expired and there is no refresh token to renew it."""

    kind = OAuthErrorKind.TOKEN_EXPIRED

    def __init__(self, user_id: str, provider: Any):
        self.user_id = user_id
        self.provider = _provider_name(provider)
        super().__init__(
            f"OAuth token expired for user {user_id} with provider "
            f"{self.provider} and could not be refreshed"
        )

    def details(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "provider": self.provider}


class TokenRefreshError(OAuthError):
    """
    A refresh was attempted and failed.

    Raised when the provider reported the grant invalid, or when transient
    failures exhausted the retry budget. ``classification`` is the provider
    outcome (``"invalid_grant"`` or ``"transient"``) and ``cause`` holds the
    last underlying failure.
    """

    kind = OAuthErrorKind.TOKEN_REFRESH

    def __init__(
        self,
        user_id: str,
        provider: Any,
        cause: Optional[BaseException] = None,
        classification: Optional[str] = None,
    ):
        self.user_id = user_id
        self.provider = _provider_name(provider)
        self.cause = cause
        self.classification = classification
        message = (
            f"Failed to refresh OAuth token for user {user_id} "
            f"with provider {self.provider}"
        )
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "provider": self.provider,
            "classification": self.classification,
            "cause": str(self.cause) if self.cause is not None else None,
        }


class InsufficientScopeError(OAuthError):
    """The token is valid but was not granted every required scope."""

    kind = OAuthErrorKind.INSUFFICIENT_SCOPE

    def __init__(
        self,
        user_id: str,
        provider: Any,
        required_scopes: Iterable[str],
        current_scopes: Iterable[str],
    ):
        self.user_id = user_id
        self.provider = _provider_name(provider)
        self.required_scopes: List[str] = sorted(required_scopes)
        self.current_scopes: List[str] = sorted(current_scopes)
        super().__init__(
            f"OAuth token for user {user_id} with provider {self.provider} has "
            f"insufficient scopes. Required: {', '.join(self.required_scopes)}. "
            f"Current: {', '.join(self.current_scopes)}"
        )

    @property
    def missing_scopes(self) -> List[str]:
        return sorted(set(self.required_scopes) - set(self.current_scopes))

    def details(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "provider": self.provider,
            "required_scopes": self.required_scopes,
            "current_scopes": self.current_scopes,
            "missing_scopes": self.missing_scopes,
        }


class OAuthDatabaseError(OAuthError):
    """Persistence failed. Surfaced as-is; retrying is the caller's decision."""

    kind = OAuthErrorKind.DATABASE

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = f"Database error during OAuth {operation} operation"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "cause": str(self.cause) if self.cause is not None else None,
        }


__all__ = [
    "CallerAction",
    "InsufficientScopeError",
    "OAuthConfigError",
    "OAuthDatabaseError",
    "OAuthError",
    "OAuthErrorKind",
    "TokenExpiredError",
    "TokenNotFoundError",
    "TokenRefreshError",
]
