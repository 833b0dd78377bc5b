"""Tests for API key authentication."""

import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from bulwark.app.core.security import CredentialSet
from bulwark.app.exceptions import ConfigurationError
from bulwark.app.middleware.auth import (
    ApiKeyAuthenticator,
    is_authenticated,
    path_is_excluded,
)

from conftest import VALID_KEYS, make_request


class TestPathIsExcluded:
    """Tests for exempt path matching."""

    @pytest.mark.parametrize(
        "path",
        ["/health", "/HEALTH", "/health/", "/health/live", "/Health/Ready"],
    )
    def test_excluded(self, path):
        assert path_is_excluded(path, ["/health"]) is True

    @pytest.mark.parametrize("path", ["/healthz", "/api/health", "/", "/status"])
    def test_not_excluded(self, path):
        assert path_is_excluded(path, ["/health"]) is False

    def test_trailing_slash_in_configuration(self):
        assert path_is_excluded("/public/docs", ["/public/"]) is True

    def test_empty_exclusions(self):
        assert path_is_excluded("/health", []) is False


class TestApiKeyAuthenticator:
    """Tests for the authentication decision."""

    @pytest.fixture
    def sleep(self):
        return AsyncMock()

    @pytest.fixture
    def authenticator(self, sleep):
        return ApiKeyAuthenticator(
            CredentialSet.from_secrets(VALID_KEYS),
            failure_delay=2.0,
            sleep=sleep,
        )

    @pytest.mark.asyncio
    async def test_missing_key_challenged_without_delay(self, authenticator, sleep):
        outcome = await authenticator.authenticate(make_request("/api/items"))

        assert outcome.status_code == 401
        assert outcome.code == "missing_api_key"
        assert outcome.message == "API key is required"
        assert outcome.headers == {"WWW-Authenticate": "ApiKey"}
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wrong_key_delayed(self, authenticator, sleep):
        request = make_request("/api/items", headers={"X-API-Key": "not-a-key"})

        outcome = await authenticator.authenticate(request)

        assert outcome.status_code == 401
        assert outcome.code == "invalid_api_key"
        assert outcome.to_response().body == b"Invalid API key"
        assert "WWW-Authenticate" not in outcome.headers
        sleep.assert_awaited_once_with(2.0)
        assert is_authenticated(request) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", VALID_KEYS)
    async def test_every_configured_key_accepted(self, authenticator, sleep, key):
        request = make_request("/api/items", headers={"X-API-Key": key})

        outcome = await authenticator.authenticate(request)

        assert outcome.accepted
        assert is_authenticated(request) is True
        assert request.state.auth_method == "ApiKey"
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_header_value_is_wrong_not_missing(self, authenticator, sleep):
        request = make_request("/api/items", headers={"X-API-Key": ""})

        outcome = await authenticator.authenticate(request)

        assert outcome.code == "invalid_api_key"
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_excluded_path_skips_authentication(self, authenticator):
        outcome = await authenticator.authenticate(make_request("/health/live"))
        assert outcome.accepted

    @pytest.mark.asyncio
    async def test_no_keys_rejects_everything(self, sleep):
        authenticator = ApiKeyAuthenticator(CredentialSet(), sleep=sleep)
        request = make_request("/api/items", headers={"X-API-Key": "anything"})

        outcome = await authenticator.authenticate(request)

        assert outcome.code == "invalid_api_key"

    @pytest.mark.asyncio
    async def test_custom_header_name(self, sleep):
        authenticator = ApiKeyAuthenticator(
            CredentialSet.from_secrets(["k1"]), header_name="X-Service-Token", sleep=sleep
        )

        ok = await authenticator.authenticate(
            make_request("/api", headers={"X-Service-Token": "k1"})
        )
        missing = await authenticator.authenticate(
            make_request("/api", headers={"X-API-Key": "k1"})
        )

        assert ok.accepted
        assert missing.code == "missing_api_key"

    def test_negative_delay_rejected(self):
        with pytest.raises(ConfigurationError):
            ApiKeyAuthenticator(CredentialSet(), failure_delay=-1)


class TestApiKeyAuthMiddleware:
    """End-to-end tests through the pipeline."""

    def test_health_needs_no_key(self, app_factory):
        client = TestClient(app_factory(), raise_server_exceptions=False)

        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.content == b""

    def test_missing_key(self, app_factory):
        client = TestClient(app_factory(), raise_server_exceptions=False)

        resp = client.get("/api/items")

        assert resp.status_code == 401
        assert resp.text == "API key is required"
        assert resp.headers["WWW-Authenticate"] == "ApiKey"

    def test_wrong_key_is_delayed(self, app_factory):
        client = TestClient(app_factory(auth_failure_delay_seconds=0.2), raise_server_exceptions=False)

        started = time.perf_counter()
        resp = client.get("/api/items", headers={"X-API-Key": "guess"})
        elapsed = time.perf_counter() - started

        assert resp.status_code == 401
        assert resp.text == "Invalid API key"
        assert elapsed >= 0.2

    def test_missing_key_is_not_delayed(self, app_factory):
        client = TestClient(app_factory(auth_failure_delay_seconds=5.0), raise_server_exceptions=False)

        started = time.perf_counter()
        resp = client.get("/api/items")
        elapsed = time.perf_counter() - started

        assert resp.status_code == 401
        assert elapsed < 5.0

    def test_valid_key_reaches_handler(self, app_factory, api_headers, audit_records):
        client = TestClient(app_factory(), raise_server_exceptions=False)

        resp = client.get("/api/items", headers=api_headers)

        assert resp.status_code == 200
        assert resp.json() == {"items": []}
        assert audit_records[-1].authenticated is True

    def test_unknown_route_still_requires_key(self, app_factory):
        client = TestClient(app_factory(), raise_server_exceptions=False)

        assert client.get("/api/nowhere").status_code == 401
