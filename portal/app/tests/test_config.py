"""
Configuration Tests

Tests the OpenIdConnect section loader, scope parsing, the connection string
lookup and startup failure on bad configuration.
"""

import pytest
from pydantic import ValidationError

from portal.app.config import (
    CALLBACK_PATH,
    DEFAULT_SCOPES,
    load_connection_string,
    load_oidc_settings,
    parse_scopes,
    validate_configuration,
)
from portal.app.errors import ConfigError, ConfigErrorReason
from portal.app.main import create_app

from conftest import make_settings

REQUIRED = {
    "Authority": "https://idp.example.com/",
    "ClientId": "portal-client",
    "ClientSecret": "client-secret",
}


class TestLoadOidcSettings:
    """Test suite for the OpenIdConnect section loader"""

    def test_defaults_applied(self):
        settings = load_oidc_settings(REQUIRED)

        assert settings.authority == "https://idp.example.com"
        assert settings.client_id == "portal-client"
        assert settings.client_secret.get_secret_value() == "client-secret"
        assert settings.response_type == "code"
        assert settings.save_tokens is True
        assert settings.get_claims_from_user_info_endpoint is True
        assert settings.scopes == ("openid", "profile", "email")
        assert settings.callback_path == CALLBACK_PATH == "/signin-oidc"

    @pytest.mark.parametrize("missing", ["Authority", "ClientId", "ClientSecret"])
    def test_missing_required_field(self, missing):
        section = {k: v for k, v in REQUIRED.items() if k != missing}

        with pytest.raises(ConfigError) as exc_info:
            load_oidc_settings(section)

        assert exc_info.value.reason == ConfigErrorReason.MISSING_FIELD
        assert exc_info.value.field == missing
        assert exc_info.value.message == f"OpenIdConnect:{missing} is required"

    def test_first_missing_field_is_reported(self):
        """Authority is checked before ClientId and ClientSecret"""
        with pytest.raises(ConfigError) as exc_info:
            load_oidc_settings({})

        assert exc_info.value.field == "Authority"

    def test_blank_value_counts_as_missing(self):
        with pytest.raises(ConfigError) as exc_info:
            load_oidc_settings(dict(REQUIRED, ClientSecret="   "))

        assert exc_info.value.field == "ClientSecret"

    def test_keys_are_case_insensitive(self):
        settings = load_oidc_settings(
            {"authority": "https://idp.example.com", "clientid": "a", "CLIENTSECRET": "b"}
        )

        assert settings.client_id == "a"

    def test_optional_values_parsed(self):
        settings = load_oidc_settings(
            dict(
                REQUIRED,
                ResponseType="code id_token",
                SaveTokens="False",
                GetClaimsFromUserInfoEndpoint="false",
                Scope="openid offline_access",
                BackchannelTimeout="5",
            )
        )

        assert settings.response_type == "code id_token"
        assert settings.save_tokens is False
        assert settings.get_claims_from_user_info_endpoint is False
        assert settings.scopes == ("openid", "offline_access")
        assert settings.backchannel_timeout == 5.0

    def test_unparseable_bool_rejected(self):
        with pytest.raises(ConfigError) as exc_info:
            load_oidc_settings(dict(REQUIRED, SaveTokens="yes"))

        assert exc_info.value.reason == ConfigErrorReason.INVALID_VALUE
        assert exc_info.value.field == "SaveTokens"

    @pytest.mark.parametrize("authority", ["idp.example.com", "ftp://idp.example.com", "https://"])
    def test_authority_must_be_http_url(self, authority):
        with pytest.raises(ConfigError) as exc_info:
            load_oidc_settings(dict(REQUIRED, Authority=authority))

        assert exc_info.value.reason == ConfigErrorReason.INVALID_VALUE

    @pytest.mark.parametrize("timeout", ["0", "-3", "soon"])
    def test_backchannel_timeout_must_be_positive(self, timeout):
        with pytest.raises(ConfigError) as exc_info:
            load_oidc_settings(dict(REQUIRED, BackchannelTimeout=timeout))

        assert exc_info.value.field == "BackchannelTimeout"

    def test_settings_are_immutable(self):
        settings = load_oidc_settings(REQUIRED)

        with pytest.raises(ValidationError):
            settings.client_id = "other"


class TestParseScopes:
    """Test suite for scope parsing"""

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_absent_or_blank_yields_default(self, raw):
        assert parse_scopes(raw) == DEFAULT_SCOPES

    def test_splits_on_whitespace(self):
        assert parse_scopes("openid  profile\tapi.read") == ("openid", "profile", "api.read")

    def test_duplicates_dropped_keeping_order(self):
        assert parse_scopes("email openid email profile openid") == ("email", "openid", "profile")

    @pytest.mark.parametrize("raw", ['openid "quoted"', "openid back\\slash", "openid café"])
    def test_malformed_yields_default(self, raw):
        assert parse_scopes(raw) == DEFAULT_SCOPES


class TestConnectionString:
    """Test suite for the connection string lookup"""

    def test_found(self):
        assert load_connection_string({"DefaultConnection": " sqlite:///./portal.db "}) == "sqlite:///./portal.db"

    def test_missing(self):
        with pytest.raises(ConfigError) as exc_info:
            load_connection_string({})

        assert exc_info.value.reason == ConfigErrorReason.MISSING_FIELD
        assert exc_info.value.message == "Connection string 'DefaultConnection' not found."


class TestStartup:
    """Configuration problems stop the application from starting"""

    def test_missing_client_secret_is_fatal(self):
        settings = make_settings(OpenIdConnect={"Authority": "https://idp.example.com", "ClientId": "a"})

        with pytest.raises(ConfigError) as exc_info:
            create_app(settings)

        assert exc_info.value.field == "ClientSecret"

    def test_missing_connection_string_is_fatal(self):
        settings = make_settings(ConnectionStrings={})

        with pytest.raises(ConfigError) as exc_info:
            create_app(settings)

        assert exc_info.value.field == "DefaultConnection"

    def test_unknown_default_challenge_scheme_is_fatal(self):
        settings = make_settings(DEFAULT_CHALLENGE_SCHEME="saml")

        with pytest.raises(ConfigError) as exc_info:
            create_app(settings)

        assert exc_info.value.reason == ConfigErrorReason.UNKNOWN_SCHEME

    def test_short_session_secret_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(SESSION_SECRET="short")

    def test_invalid_log_level_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(LOG_LEVEL="VERBOSE")


class TestValidateConfiguration:
    """Test suite for the configuration report"""

    def test_valid_configuration(self):
        report = validate_configuration(make_settings())

        assert report["valid"] is True
        assert report["errors"] == []
        assert report["scopes"] == ["openid", "profile", "email"]

    def test_collects_every_error(self):
        report = validate_configuration(make_settings(OpenIdConnect={}, ConnectionStrings={}))

        assert report["valid"] is False
        assert report["errors"] == [
            "OpenIdConnect:Authority is required",
            "Connection string 'DefaultConnection' not found.",
        ]

    def test_warns_on_missing_openid_scope(self):
        settings = make_settings(
            OpenIdConnect={
                "Authority": "https://idp.example.com",
                "ClientId": "a",
                "ClientSecret": "b",
                "Scope": "profile",
            }
        )

        report = validate_configuration(settings)

        assert report["valid"] is True
        assert any("openid" in w for w in report["warnings"])
