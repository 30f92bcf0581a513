"""Tests for the callback HTTP application."""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import respx
from conftest import BACKEND_TOKEN_URL, PROVIDER_TOKEN_URL
from starlette.testclient import TestClient

from pkce_auth.callback_app import create_callback_app
from pkce_auth.config import Config, ConfigError, Environment
from pkce_auth.diagnostics import DiagnosticsRecorder
from pkce_auth.oauth.session import OAuthSession

BACKEND_SESSION = {
    "access_token": "backend-access",
    "refresh_token": "backend-refresh",
    "expires_in": 3600,
    "user": {"id": "user-1"},
}


def query_of(url: str) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


def start_sign_in(client: TestClient, provider: str | None = None) -> dict[str, str]:
    """Hit the login route and return the authorization URL's query."""
    params = {"provider": provider} if provider else None
    response = client.get("/auth/login", params=params, follow_redirects=False)
    assert response.status_code == 302
    return query_of(response.headers["location"])


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, oauth_config: Config) -> None:
        """Test health endpoint responds correctly."""
        client = TestClient(create_callback_app(oauth_config))
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "app_name": "OAuth Test Manager",
            "environment": "local",
        }


class TestCreateCallbackApp:
    """Tests for create_callback_app function."""

    def test_requires_sign_in_settings(self, default_config: Config) -> None:
        """Test that missing client settings are rejected up front."""
        with pytest.raises(ConfigError, match="oauth_client_id"):
            create_callback_app(default_config)


class TestLogin:
    """Tests for the login endpoint."""

    def test_redirects_to_provider(self, oauth_config: Config) -> None:
        """Test that login redirects with PKCE parameters."""
        client = TestClient(create_callback_app(oauth_config))
        query = start_sign_in(client)

        assert query["client_id"] == "test-client-id"
        assert query["redirect_uri"] == "http://localhost:8765/auth/callback"
        assert query["code_challenge_method"] == "S256"
        assert len(query["code_challenge"]) == 43
        assert query["state"]
        assert query["access_type"] == "offline"

    def test_invalid_provider(self, oauth_config: Config) -> None:
        """Test that a reserved provider name is rejected."""
        client = TestClient(create_callback_app(oauth_config))
        response = client.get(
            "/auth/login", params={"provider": "default"}, follow_redirects=False
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_provider"


class TestCallback:
    """Tests for the callback endpoint."""

    def test_successful_sign_in(self, oauth_config: Config) -> None:
        """Test a full sign-in across two requests."""
        sessions: list[OAuthSession] = []

        async def on_session(session: OAuthSession) -> None:
            sessions.append(session)

        client = TestClient(create_callback_app(oauth_config, on_session=on_session))

        with respx.mock:
            route = respx.post(BACKEND_TOKEN_URL).mock(
                return_value=httpx.Response(200, json=BACKEND_SESSION)
            )
            query = start_sign_in(client)
            response = client.get(
                "/auth/callback",
                params={"code": "auth-code", "state": query["state"]},
                follow_redirects=False,
            )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "succeeded"
        assert data["session"]["user_id"] == "user-1"
        assert "backend-access" not in response.text
        assert route.call_count == 1
        assert [session.access_token for session in sessions] == ["backend-access"]

    def test_non_default_provider(self, oauth_config: Config) -> None:
        """Test that the provider chosen at login carries through the callback."""
        client = TestClient(create_callback_app(oauth_config))

        with respx.mock:
            route = respx.post(BACKEND_TOKEN_URL).mock(
                return_value=httpx.Response(200, json=BACKEND_SESSION)
            )
            query = start_sign_in(client, "github")
            response = client.get(
                "/auth/callback",
                params={"code": "auth-code", "state": query["state"]},
                follow_redirects=False,
            )

        assert query["redirect_uri"] == "http://localhost:8765/auth/callback"
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "succeeded"
        assert data["provider"] == "github"
        assert route.call_count == 1

        replay = client.get(
            "/auth/callback",
            params={"code": "auth-code", "state": query["state"]},
            follow_redirects=False,
        )
        assert replay.status_code == 400
        assert replay.json()["error_kind"] == "verifier_missing"

    def test_success_redirect(self, oauth_config: Config) -> None:
        """Test the post-login redirect."""
        config = oauth_config.model_copy(update={"post_login_redirect": "/app"})
        client = TestClient(create_callback_app(config))

        with respx.mock:
            respx.post(BACKEND_TOKEN_URL).mock(
                return_value=httpx.Response(200, json=BACKEND_SESSION)
            )
            query = start_sign_in(client)
            response = client.get(
                "/auth/callback",
                params={"code": "auth-code", "state": query["state"]},
                follow_redirects=False,
            )

        assert response.status_code == 302
        assert response.headers["location"] == "/app"

    def test_state_mismatch(self, oauth_config: Config) -> None:
        """Test that a forged state fails without an exchange."""
        client = TestClient(create_callback_app(oauth_config))

        with respx.mock:
            route = respx.post(BACKEND_TOKEN_URL)
            start_sign_in(client)
            response = client.get(
                "/auth/callback",
                params={"code": "auth-code", "state": "forged"},
                follow_redirects=False,
            )

        assert response.status_code == 400
        data = response.json()
        assert data["error_kind"] == "state_mismatch"
        assert data["attempts"] == []
        assert route.call_count == 0

    def test_failure_redirect(self, oauth_config: Config) -> None:
        """Test that failures redirect with error kind and reference."""
        config = oauth_config.model_copy(
            update={"login_error_redirect": "https://app.example.com/login?from=oauth"}
        )
        client = TestClient(create_callback_app(config))

        with respx.mock:
            respx.post(BACKEND_TOKEN_URL).mock(
                return_value=httpx.Response(400, json={"error": "invalid_grant"})
            )
            query = start_sign_in(client)
            response = client.get(
                "/auth/callback",
                params={"code": "used-code", "state": query["state"]},
                follow_redirects=False,
            )

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://app.example.com/login?from=oauth&")
        redirect_query = query_of(location)
        assert redirect_query["error"] == "provider_error"
        assert len(redirect_query["ref"]) == 12

    def test_all_strategies_fail(self, oauth_config: Config) -> None:
        """Test that transient failures everywhere exhaust the chain."""
        client = TestClient(create_callback_app(oauth_config))

        with respx.mock:
            respx.post(BACKEND_TOKEN_URL).mock(return_value=httpx.Response(503))
            respx.post(PROVIDER_TOKEN_URL).mock(return_value=httpx.Response(502))
            query = start_sign_in(client)
            response = client.get(
                "/auth/callback",
                params={"code": "auth-code", "state": query["state"]},
                follow_redirects=False,
            )

        data = response.json()
        assert response.status_code == 400
        assert data["error_kind"] == "exchange_exhausted"
        assert [attempt["strategy"] for attempt in data["attempts"]] == [
            "backend",
            "provider",
            "backend_fallback_verifier",
        ]
        assert data["reference_id"] in data["message"]

    def test_error_callback(self, oauth_config: Config) -> None:
        """Test a provider error redirect."""
        client = TestClient(create_callback_app(oauth_config))
        query = start_sign_in(client)

        response = client.get(
            "/auth/callback",
            params={
                "error": "access_denied",
                "error_description": "The user denied access",
                "state": query["state"],
            },
        )

        data = response.json()
        assert data["error_kind"] == "provider_error"
        assert data["message"] == "The user denied access"


class TestClear:
    """Tests for the clear endpoint."""

    def test_clear_pending_sign_in(self, oauth_config: Config) -> None:
        """Test that clearing discards stored parameters."""
        client = TestClient(create_callback_app(oauth_config))
        query = start_sign_in(client)

        response = client.post("/auth/clear")
        assert response.json() == {"status": "cleared", "provider": "google"}

        response = client.get(
            "/auth/callback", params={"code": "auth-code", "state": query["state"]}
        )
        assert response.json()["error_kind"] == "verifier_missing"


class TestDiagnostics:
    """Tests for the diagnostics endpoint."""

    def test_report(self, oauth_config: Config, recorder: DiagnosticsRecorder) -> None:
        """Test that the report reflects recorded phases."""
        client = TestClient(create_callback_app(oauth_config, recorder=recorder))
        start_sign_in(client)

        response = client.get("/auth/diagnostics", params={"events": "1"})

        data = response.json()
        assert data["report"]["phases"]["begin"] == {"succeeded": 1, "failed": 0}
        assert {event["phase"] for event in data["events"]} >= {"persist", "begin"}

    def test_hidden_in_prod(self, oauth_config: Config) -> None:
        """Test that diagnostics are not served in production."""
        config = oauth_config.model_copy(update={"environment": Environment.PROD})
        client = TestClient(create_callback_app(config))

        assert client.get("/auth/diagnostics").status_code == 404
