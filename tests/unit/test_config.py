"""
Tests for configuration loading and validation.

Validates environment variable handling, defaults, provider credential
lookup and production checks.
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from oauth_lifecycle.config import Settings, get_settings, parse_string_list
from oauth_lifecycle.errors import OAuthConfigError
from oauth_lifecycle.utils.crypto import generate_fernet_key
from oauth_lifecycle.utils.types import Provider


class TestConfiguration:
    """Test suite for configuration management."""

    def test_settings_loads_with_defaults(self):
        """Settings should load with reasonable defaults."""
        with patch.dict(os.environ, {"APP_ENV": "test"}, clear=True):
            settings = Settings(_env_file=None)

            assert settings.app_env == "test"
            assert settings.log_level == "INFO"
            assert settings.oauth_enabled_providers == [Provider.GOOGLE, Provider.ZOOM]
            assert settings.oauth_expiry_skew_seconds == 30
            assert settings.oauth_refresh_max_attempts == 3
            assert settings.google_token_url == "https://oauth2.googleapis.com/token"
            assert settings.zoom_token_url == "https://zoom.us/oauth/token"
            assert settings.database_url is None

    def test_fernet_key_generated_when_missing(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)
            assert settings.fernet_key
            assert len(settings.fernet_key) == 44

    def test_enabled_providers_from_comma_separated_env(self):
        with patch.dict(os.environ, {"OAUTH_ENABLED_PROVIDERS": "google"}, clear=True):
            settings = Settings(_env_file=None)
            assert settings.oauth_enabled_providers == [Provider.GOOGLE]

    def test_enabled_providers_from_json_env(self):
        with patch.dict(
            os.environ, {"OAUTH_ENABLED_PROVIDERS": '["zoom", "google"]'}, clear=True
        ):
            settings = Settings(_env_file=None)
            assert settings.oauth_enabled_providers == [Provider.ZOOM, Provider.GOOGLE]

    def test_unknown_provider_rejected(self):
        with patch.dict(os.environ, {"OAUTH_ENABLED_PROVIDERS": "github"}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_database_url_aliases(self):
        with patch.dict(os.environ, {"DB_URL": "postgresql://u:p@db/oauth"}, clear=True):
            settings = Settings(_env_file=None)
            assert settings.database_url == "postgresql://u:p@db/oauth"

    def test_previous_fernet_keys_parsed(self):
        old_key = generate_fernet_key()
        with patch.dict(os.environ, {"FERNET_PREVIOUS_KEYS": f"{old_key}, "}, clear=True):
            settings = Settings(_env_file=None)
            assert settings.fernet_previous_keys == [old_key]

    @pytest.mark.parametrize(
        "field,value",
        [
            ("LOG_LEVEL", "LOUD"),
            ("APP_ENV", "qa"),
            ("OAUTH_REFRESH_MAX_ATTEMPTS", "0"),
            ("OAUTH_HTTP_TIMEOUT_SECONDS", "0"),
        ],
    )
    def test_invalid_values_rejected(self, field, value):
        with patch.dict(os.environ, {field: value}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_log_level_normalized(self):
        with patch.dict(os.environ, {"LOG_LEVEL": "debug"}, clear=True):
            assert Settings(_env_file=None).log_level == "DEBUG"

    def test_get_settings_is_singleton(self):
        with patch.dict(os.environ, {"APP_ENV": "test"}, clear=True):
            assert get_settings() is get_settings()


class TestProviderCredentials:
    """Test provider credential and endpoint lookup."""

    def test_credentials_returned(self, settings):
        assert settings.provider_credentials(Provider.GOOGLE) == (
            "google-client-id",
            "google-client-secret",
        )
        assert settings.provider_credentials("zoom") == (
            "zoom-client-id",
            "zoom-client-secret",
        )

    def test_missing_client_id(self, settings):
        settings = settings.model_copy(update={"zoom_client_id": None})

        with pytest.raises(OAuthConfigError, match="ZOOM_CLIENT_ID"):
            settings.provider_credentials(Provider.ZOOM)

    def test_missing_client_secret(self, settings):
        settings = settings.model_copy(update={"google_client_secret": ""})

        with pytest.raises(OAuthConfigError, match="GOOGLE_CLIENT_SECRET"):
            settings.provider_credentials(Provider.GOOGLE)

    def test_disabled_provider(self, settings):
        settings = settings.model_copy(
            update={"oauth_enabled_providers": [Provider.GOOGLE]}
        )

        with pytest.raises(OAuthConfigError, match="not enabled"):
            settings.provider_credentials("zoom")

    def test_unsupported_provider(self, settings):
        with pytest.raises(OAuthConfigError, match="Unsupported OAuth provider"):
            settings.provider_credentials("github")

    def test_endpoints(self, settings):
        assert settings.token_url("google") == "https://oauth2.googleapis.com/token"
        assert settings.revoke_url(Provider.ZOOM) == "https://zoom.us/oauth/revoke"


class TestProductionValidation:
    """Test production-only configuration checks."""

    def test_non_production_skips_checks(self):
        with patch.dict(os.environ, {}, clear=True):
            Settings(_env_file=None).validate_required_for_production()

    def test_production_requires_database_and_credentials(self):
        with patch.dict(os.environ, {"APP_ENV": "production"}, clear=True):
            settings = Settings(_env_file=None)

            with pytest.raises(OAuthConfigError) as exc_info:
                settings.validate_required_for_production()

            message = str(exc_info.value)
            assert "DATABASE_URL is required" in message
            assert "GOOGLE_CLIENT_ID" in message
            assert "ZOOM_CLIENT_ID" in message

    def test_production_with_complete_configuration(self):
        env = {
            "APP_ENV": "production",
            "DATABASE_URL": "postgresql://u:p@db/oauth",
            "OAUTH_ENABLED_PROVIDERS": "google",
            "GOOGLE_CLIENT_ID": "id",
            "GOOGLE_CLIENT_SECRET": "secret",
        }
        with patch.dict(os.environ, env, clear=True):
            Settings(_env_file=None).validate_required_for_production()


class TestParseStringList:
    """Test list parsing for list-valued environment variables."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, []),
            ("", []),
            ("a, b,,c", ["a", "b", "c"]),
            ('["a", "b"]', ["a", "b"]),
            (("a", "b"), ["a", "b"]),
        ],
    )
    def test_formats(self, value, expected):
        assert parse_string_list(value) == expected
