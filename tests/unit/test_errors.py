"""
Unit tests for the OAuth error taxonomy.
"""

import pytest

from oauth_lifecycle.errors import (
    CallerAction,
    InsufficientScopeError,
    OAuthConfigError,
    OAuthDatabaseError,
    OAuthError,
    OAuthErrorKind,
    TokenExpiredError,
    TokenNotFoundError,
    TokenRefreshError,
)
from oauth_lifecycle.utils.types import Provider


class TestErrorKinds:
    """Every error carries its discriminant and caller action."""

    @pytest.mark.parametrize(
        "error,kind,action",
        [
            (OAuthConfigError("missing"), OAuthErrorKind.CONFIG, CallerAction.FIX_CONFIGURATION),
            (
                TokenNotFoundError("u", Provider.GOOGLE),
                OAuthErrorKind.TOKEN_NOT_FOUND,
                CallerAction.REAUTHORIZE,
            ),
            (
                TokenExpiredError("u", Provider.GOOGLE),
                OAuthErrorKind.TOKEN_EXPIRED,
                CallerAction.REAUTHORIZE,
            ),
            (
                TokenRefreshError("u", Provider.ZOOM),
                OAuthErrorKind.TOKEN_REFRESH,
                CallerAction.REAUTHORIZE,
            ),
            (
                InsufficientScopeError("u", Provider.GOOGLE, ["a"], []),
                OAuthErrorKind.INSUFFICIENT_SCOPE,
                CallerAction.INCREMENTAL_CONSENT,
            ),
            (
                OAuthDatabaseError("token save"),
                OAuthErrorKind.DATABASE,
                CallerAction.RETRY_LATER,
            ),
        ],
    )
    def test_kind_and_action(self, error, kind, action):
        assert isinstance(error, OAuthError)
        assert error.kind is kind
        assert error.action is action
        assert error.to_dict()["kind"] == kind.value
        assert error.to_dict()["action"] == action.value

    def test_only_database_errors_are_retryable(self):
        assert OAuthDatabaseError("token save").retryable
        assert not TokenRefreshError("u", "google").retryable
        assert not OAuthConfigError("x").retryable

    def test_requires_reauthorization(self):
        assert TokenExpiredError("u", "google").requires_reauthorization
        assert not InsufficientScopeError("u", "google", ["a"], []).requires_reauthorization

    def test_match_on_kind(self):
        def describe(err: OAuthError) -> str:
            match err.kind:
                case OAuthErrorKind.INSUFFICIENT_SCOPE:
                    return "consent"
                case OAuthErrorKind.DATABASE:
                    return "retry"
                case _:
                    return "reauthorize"

        assert describe(InsufficientScopeError("u", "google", ["a"], [])) == "consent"
        assert describe(OAuthDatabaseError("token removal")) == "retry"
        assert describe(TokenNotFoundError("u", "zoom")) == "reauthorize"


class TestErrorPayloads:
    """Test messages and kind-specific fields."""

    def test_token_not_found_message(self):
        error = TokenNotFoundError("user-123", Provider.GOOGLE)

        assert error.provider == "google"
        assert str(error) == "No OAuth token found for user user-123 with provider google"
        assert error.to_dict()["user_id"] == "user-123"

    def test_refresh_error_includes_cause(self):
        cause = RuntimeError("Terminal: invalid_grant")
        error = TokenRefreshError("user-123", "zoom", cause)

        assert error.cause is cause
        assert str(error).endswith(": Terminal: invalid_grant")
        assert error.to_dict()["cause"] == "Terminal: invalid_grant"

    def test_refresh_error_without_cause(self):
        error = TokenRefreshError("user-123", "zoom")
        assert error.to_dict()["cause"] is None
        assert error.to_dict()["classification"] is None

    def test_refresh_error_classification(self):
        error = TokenRefreshError(
            "user-123", "google", RuntimeError("HTTP 503"), classification="transient"
        )

        assert error.classification == "transient"
        assert error.to_dict()["classification"] == "transient"

    def test_insufficient_scope_fields(self):
        error = InsufficientScopeError(
            "user-123", Provider.GOOGLE, {"b", "a"}, frozenset({"a"})
        )

        assert error.required_scopes == ["a", "b"]
        assert error.current_scopes == ["a"]
        assert error.missing_scopes == ["b"]
        assert "Required: a, b. Current: a" in str(error)

    def test_database_error_message(self):
        error = OAuthDatabaseError("token save", ValueError("disk full"))

        assert str(error) == "Database error during OAuth token save operation: disk full"
        assert error.to_dict() == {
            "kind": "database",
            "action": "retry_later",
            "message": str(error),
            "operation": "token save",
            "cause": "disk full",
        }
