"""Tests for the provider adapters and the connector registry."""

import json
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from config.settings import config
from connectors.exceptions import (
    CredentialMissingError,
    ExchangeError,
    InvalidGrantError,
    RefreshError,
    UnknownProviderError,
)
from connectors.facebook import FacebookConnector, instagram_connector
from connectors.google import GoogleConnector
from connectors.registry import ConnectorRegistry
from connectors.tiktok import TikTokConnector


# ── helpers ────────────────────────────────────────────────────────────────────


def _transport(connector, handler):
    """Route the connector's HTTP calls through an httpx.MockTransport."""
    transport = httpx.MockTransport(handler)
    return patch.object(
        connector,
        "_client",
        lambda: httpx.AsyncClient(transport=transport),
    )


def _form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def _google() -> GoogleConnector:
    return GoogleConnector("google-drive", "Google Drive", ["https://www.googleapis.com/auth/drive"])


def _facebook() -> FacebookConnector:
    return FacebookConnector("facebook", "Facebook", ["pages_show_list"])


# ── Google ─────────────────────────────────────────────────────────────────────


class TestGoogleConnector:
    def test_auth_url_requests_offline_access(self):
        url = _google().get_auth_url("https://app/callback", "state-123")
        query = parse_qs(urlparse(url).query)

        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert query["client_id"] == ["gd-client-id"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["state"] == ["state-123"]
        assert query["scope"] == ["https://www.googleapis.com/auth/drive"]

    def test_auth_url_scope_override(self):
        url = _google().get_auth_url("https://app/callback", "s", scopes=["a", "b"])
        assert parse_qs(urlparse(url).query)["scope"] == ["a b"]

    @pytest.mark.asyncio
    async def test_exchange_sends_form_body(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["content_type"] = request.headers["content-type"]
            seen["form"] = _form(request)
            return httpx.Response(
                200,
                json={
                    "access_token": "ya29.access",
                    "refresh_token": "1//refresh",
                    "expires_in": 3599,
                    "scope": "https://www.googleapis.com/auth/drive",
                    "token_type": "Bearer",
                },
            )

        connector = _google()
        with _transport(connector, handler):
            result = await connector.exchange_code("auth-code", "https://app/callback")

        assert seen["method"] == "POST"
        assert seen["url"] == "https://oauth2.googleapis.com/token"
        assert seen["content_type"] == "application/x-www-form-urlencoded"
        assert seen["form"] == {
            "code": "auth-code",
            "client_id": "gd-client-id",
            "client_secret": "gd-client-secret",
            "redirect_uri": "https://app/callback",
            "grant_type": "authorization_code",
        }
        assert result.access_token == "ya29.access"
        assert result.refresh_token == "1//refresh"
        assert result.expires_in == 3599
        assert result.token_type == "Bearer"

    @pytest.mark.asyncio
    async def test_refresh_sends_refresh_grant(self):
        seen = {}

        def handler(request):
            seen["form"] = _form(request)
            return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

        connector = _google()
        with _transport(connector, handler):
            result = await connector.refresh_tokens("1//refresh")

        assert seen["form"]["grant_type"] == "refresh_token"
        assert seen["form"]["refresh_token"] == "1//refresh"
        assert result.access_token == "fresh"
        assert result.refresh_token is None

    @pytest.mark.asyncio
    async def test_missing_access_token_is_exchange_error(self):
        connector = _google()
        with _transport(connector, lambda r: httpx.Response(200, json={"token_type": "Bearer"})):
            with pytest.raises(ExchangeError) as exc_info:
                await connector.exchange_code("code", "https://app/callback")

        assert exc_info.value.status_code == 200
        assert exc_info.value.body == ["token_type"]

    @pytest.mark.asyncio
    async def test_malformed_token_response_is_exchange_error(self):
        body = {"access_token": 12345, "expires_in": 3600}
        connector = _google()
        with _transport(connector, lambda r: httpx.Response(200, json=body)):
            with pytest.raises(ExchangeError) as exc_info:
                await connector.exchange_code("code", "https://app/callback")

        assert exc_info.value.status_code == 200
        assert exc_info.value.body == ["access_token", "expires_in"]
        assert "12345" not in exc_info.value.message
        assert connector.stats.snapshot().errors_by_code == {"EXCHANGE_FAILED": 1}

    @pytest.mark.asyncio
    async def test_malformed_refresh_response_is_transient(self):
        body = {"access_token": "fresh", "token_type": ["Bearer"]}
        connector = _google()
        with _transport(connector, lambda r: httpx.Response(200, json=body)):
            with pytest.raises(RefreshError) as exc_info:
                await connector.refresh_tokens("refresh")

        assert not isinstance(exc_info.value, InvalidGrantError)
        assert exc_info.value.body == ["access_token", "token_type"]

    @pytest.mark.asyncio
    async def test_rejected_exchange_carries_status_and_body(self):
        body = {"error": "invalid_grant", "error_description": "Bad Request"}
        connector = _google()
        with _transport(connector, lambda r: httpx.Response(400, json=body)):
            with pytest.raises(ExchangeError) as exc_info:
                await connector.exchange_code("used-code", "https://app/callback")

        assert exc_info.value.status_code == 400
        assert exc_info.value.body == body
        assert exc_info.value.provider == "google-drive"

    @pytest.mark.asyncio
    async def test_invalid_grant_on_refresh_is_permanent(self):
        connector = _google()
        with _transport(
            connector,
            lambda r: httpx.Response(400, json={"error": "invalid_grant"}),
        ):
            with pytest.raises(InvalidGrantError) as exc_info:
                await connector.refresh_tokens("revoked")

        assert isinstance(exc_info.value, RefreshError)
        assert exc_info.value.code == "INVALID_GRANT"

    @pytest.mark.asyncio
    async def test_server_error_on_refresh_is_transient(self):
        connector = _google()
        with _transport(connector, lambda r: httpx.Response(503, text="unavailable")):
            with pytest.raises(RefreshError) as exc_info:
                await connector.refresh_tokens("refresh")

        assert not isinstance(exc_info.value, InvalidGrantError)
        assert exc_info.value.status_code == 503
        assert exc_info.value.body == {"raw": "unavailable"}

    @pytest.mark.asyncio
    async def test_network_failure_has_no_status(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        connector = _google()
        with _transport(connector, handler):
            with pytest.raises(RefreshError) as exc_info:
                await connector.refresh_tokens("refresh")

        assert exc_info.value.status_code is None
        assert connector.stats.snapshot().failure == 1

    @pytest.mark.asyncio
    async def test_call_stats_recorded(self):
        responses = iter([
            httpx.Response(200, json={"access_token": "a"}),
            httpx.Response(500, json={"error": "server_error"}),
        ])
        connector = _google()
        with _transport(connector, lambda r: next(responses)):
            await connector.refresh_tokens("r")
            with pytest.raises(RefreshError):
                await connector.refresh_tokens("r")

        stats = connector.stats.snapshot()
        assert stats.total == 2
        assert stats.success == 1
        assert stats.failure == 1
        assert stats.average_ms is not None
        assert stats.errors_by_code == {"REFRESH_FAILED": 1}

    @pytest.mark.asyncio
    async def test_errors_counted_by_code(self):
        responses = iter([
            httpx.Response(400, json={"error": "invalid_grant"}),
            httpx.Response(400, json={"error": "invalid_grant"}),
            httpx.Response(503, text="unavailable"),
        ])

        def handler(request):
            if request.url.params.get("boom"):
                raise httpx.ReadTimeout("timed out", request=request)
            return next(responses)

        connector = _google()
        with _transport(connector, handler):
            for _ in range(3):
                with pytest.raises(RefreshError):
                    await connector.refresh_tokens("r")
            with pytest.raises(ExchangeError):
                await connector._request(
                    "POST",
                    "https://oauth2.googleapis.com/token?boom=1",
                    ExchangeError,
                )

        stats = connector.stats.snapshot()
        assert stats.failure == 4
        assert stats.errors_by_code == {
            "INVALID_GRANT": 2,
            "REFRESH_FAILED": 1,
            "EXCHANGE_FAILED": 1,
        }

    @pytest.mark.asyncio
    async def test_outcome_logged_without_tokens(self, caplog):
        connector = _google()
        with _transport(
            connector,
            lambda r: httpx.Response(200, json={"access_token": "ya29.secret", "expires_in": 3600}),
        ):
            with caplog.at_level("DEBUG", logger="connectors.google"):
                await connector.refresh_tokens("1//refresh-secret")

        messages = [r.getMessage() for r in caplog.records if r.name == "connectors.google"]
        assert messages == ["google-drive token refresh returned 200"]
        assert "secret" not in caplog.text

    def test_missing_credentials(self):
        youtube = GoogleConnector("youtube", "YouTube", ["scope"])

        assert youtube.is_configured() is False
        with pytest.raises(CredentialMissingError):
            youtube.get_auth_url("https://app/callback", "state")

    @pytest.mark.asyncio
    async def test_missing_credentials_block_refresh(self, monkeypatch):
        monkeypatch.setattr(config, "google_drive_client_secret", "")
        connector = _google()

        with pytest.raises(CredentialMissingError):
            await connector.refresh_tokens("refresh")
        assert connector.stats.snapshot().total == 0


# ── TikTok ─────────────────────────────────────────────────────────────────────


class TestTikTokConnector:
    def test_auth_url_uses_client_key(self):
        url = TikTokConnector().get_auth_url("https://app/callback", "xyz")
        query = parse_qs(urlparse(url).query)

        assert url.startswith("https://www.tiktok.com/auth/authorize/?")
        assert query["client_key"] == ["tt-client-key"]
        assert "client_id" not in query
        assert query["scope"] == ["user.info.basic,video.upload"]

    @pytest.mark.asyncio
    async def test_exchange_sends_json_and_unwraps_envelope(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["content_type"] = request.headers["content-type"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "data": {
                        "access_token": "act.tiktok",
                        "refresh_token": "rft.tiktok",
                        "expires_in": 86400,
                        "refresh_expires_in": 31536000,
                        "open_id": "open-123",
                        "scope": "user.info.basic,video.upload",
                    },
                    "message": "success",
                },
            )

        connector = TikTokConnector()
        with _transport(connector, handler):
            result = await connector.exchange_code("tt-code", "https://app/callback")

        assert seen["url"] == "https://open-api.tiktok.com/oauth/access_token/"
        assert seen["content_type"] == "application/json"
        assert seen["body"] == {
            "client_key": "tt-client-key",
            "client_secret": "tt-client-secret",
            "code": "tt-code",
            "grant_type": "authorization_code",
        }
        assert result.access_token == "act.tiktok"
        assert result.refresh_token == "rft.tiktok"
        assert result.expires_in == 86400
        assert result.extra == {"open_id": "open-123", "refresh_expires_in": 31536000}
        assert result.metadata()["open_id"] == "open-123"

    @pytest.mark.asyncio
    async def test_refresh_returns_rotated_token(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"data": {"access_token": "act.2", "refresh_token": "rft.2", "expires_in": 86400}},
            )

        connector = TikTokConnector()
        with _transport(connector, handler):
            result = await connector.refresh_tokens("rft.1")

        assert seen["url"] == "https://open-api.tiktok.com/oauth/refresh_token/"
        assert seen["body"] == {
            "client_key": "tt-client-key",
            "grant_type": "refresh_token",
            "refresh_token": "rft.1",
        }
        assert result.refresh_token == "rft.2"

    @pytest.mark.asyncio
    async def test_envelope_error_with_200_status(self):
        body = {"data": {"error_code": 10008, "description": "Refresh_token is invalid"}}
        connector = TikTokConnector()
        with _transport(connector, lambda r: httpx.Response(200, json=body)):
            with pytest.raises(InvalidGrantError) as exc_info:
                await connector.refresh_tokens("dead")

        assert exc_info.value.body == body

    @pytest.mark.asyncio
    async def test_other_envelope_error_is_transient(self):
        body = {"data": {"error_code": 10000, "description": "System error"}}
        connector = TikTokConnector()
        with _transport(connector, lambda r: httpx.Response(200, json=body)):
            with pytest.raises(RefreshError) as exc_info:
                await connector.refresh_tokens("rft")

        assert not isinstance(exc_info.value, InvalidGrantError)

    @pytest.mark.asyncio
    async def test_envelope_error_on_exchange(self):
        body = {"data": {"error_code": 10007, "description": "Code expired"}}
        connector = TikTokConnector()
        with _transport(connector, lambda r: httpx.Response(200, json=body)):
            with pytest.raises(ExchangeError):
                await connector.exchange_code("stale", "https://app/callback")


# ── Facebook / Instagram ───────────────────────────────────────────────────────


class TestFacebookConnector:
    def test_refresh_credential_is_access_token(self):
        assert _facebook().refresh_credential("EAAB-access", None) == "EAAB-access"
        assert _facebook().refresh_credential(None, "unused") is None

    @pytest.mark.asyncio
    async def test_exchange_posts_json(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"access_token": "EAAB-short", "token_type": "bearer", "expires_in": 5183944},
            )

        connector = _facebook()
        with _transport(connector, handler):
            result = await connector.exchange_code("fb-code", "https://app/callback")

        assert seen["method"] == "POST"
        assert seen["body"]["client_id"] == "fb-client-id"
        assert seen["body"]["code"] == "fb-code"
        assert result.access_token == "EAAB-short"
        assert result.refresh_token is None

    @pytest.mark.asyncio
    async def test_refresh_uses_token_exchange_grant(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"access_token": "EAAB-long", "expires_in": 5184000})

        connector = _facebook()
        with _transport(connector, handler):
            result = await connector.refresh_tokens("EAAB-current")

        assert seen["method"] == "GET"
        assert seen["params"] == {
            "grant_type": "fb_exchange_token",
            "client_id": "fb-client-id",
            "client_secret": "fb-client-secret",
            "fb_exchange_token": "EAAB-current",
        }
        assert result.access_token == "EAAB-long"

    @pytest.mark.asyncio
    async def test_oauth_exception_190_is_permanent(self):
        body = {"error": {"message": "Session has expired", "type": "OAuthException", "code": 190}}
        connector = _facebook()
        with _transport(connector, lambda r: httpx.Response(400, json=body)):
            with pytest.raises(InvalidGrantError):
                await connector.refresh_tokens("EAAB-old")

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self):
        body = {"error": {"message": "Too many calls", "type": "OAuthException", "code": 4}}
        connector = _facebook()
        with _transport(connector, lambda r: httpx.Response(400, json=body)):
            with pytest.raises(RefreshError) as exc_info:
                await connector.refresh_tokens("EAAB")

        assert not isinstance(exc_info.value, InvalidGrantError)

    def test_instagram_uses_own_authorize_url(self, monkeypatch):
        monkeypatch.setattr(config, "instagram_client_id", "ig-id")
        monkeypatch.setattr(config, "instagram_client_secret", "ig-secret")

        url = instagram_connector().get_auth_url("https://app/callback", "s")

        assert url.startswith("https://api.instagram.com/oauth/authorize?")
        assert "client_id=ig-id" in url


# ── Registry ───────────────────────────────────────────────────────────────────


class TestConnectorRegistry:
    def test_singleton(self):
        assert ConnectorRegistry() is ConnectorRegistry()

    def test_reset_gives_new_instance(self):
        first = ConnectorRegistry()
        ConnectorRegistry.reset()
        assert ConnectorRegistry() is not first

    def test_discover_registers_configured_only(self):
        registry = ConnectorRegistry()
        registry.discover()

        assert sorted(registry.list_configured()) == ["facebook", "google-drive", "tiktok"]
        assert registry.get("youtube") is None

    def test_list_providers_includes_unconfigured(self):
        info = {p.provider: p for p in ConnectorRegistry().list_providers()}

        assert set(info) == {"google-drive", "youtube", "tiktok", "facebook", "instagram"}
        assert info["google-drive"].configured is True
        assert info["instagram"].configured is False
        assert info["tiktok"].category == "social"

    def test_require_unknown_provider(self):
        with pytest.raises(UnknownProviderError) as exc_info:
            ConnectorRegistry().require("myspace")
        assert exc_info.value.provider == "myspace"

    def test_register_replaces_adapter(self, register_fake):
        fake = register_fake("google-drive")
        assert ConnectorRegistry().require("google-drive") is fake

    def test_call_stats_per_registered_adapter(self, register_fake):
        register_fake("tiktok")
        stats = ConnectorRegistry().call_stats()
        assert stats["tiktok"].total == 0
