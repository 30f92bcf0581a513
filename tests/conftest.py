"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from cryptography.fernet import Fernet

from pkce_auth.config import Config, Environment, LogLevel
from pkce_auth.diagnostics import DiagnosticsRecorder
from pkce_auth.logging_config import reset_logging
from pkce_auth.oauth.pkce import PKCEParameterStore
from pkce_auth.oauth.storage import InMemoryStorage

BACKEND_URL = "https://backend.example.com"
BACKEND_TOKEN_URL = "https://backend.example.com/auth/v1/token?grant_type=pkce"
PROVIDER_TOKEN_URL = "https://oauth2.example.com/token"


class FakeClock:
    """Settable time source for TTL tests."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def clean_logging() -> Iterator[None]:
    """Keep package log records flowing to caplog between tests."""
    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def default_config() -> Config:
    """Create a default configuration for testing."""
    return Config()


@pytest.fixture
def dev_config() -> Config:
    """Create a development configuration for testing."""
    return Config(
        app_name="Test Auth Manager",
        log_level=LogLevel.DEBUG,
        environment=Environment.DEV,
        host="127.0.0.1",
        port=8080,
    )


@pytest.fixture
def oauth_config() -> Config:
    """Create a configuration with sign-in settings for testing."""
    return Config(
        app_name="OAuth Test Manager",
        oauth_authorization_url="https://auth.example.com/authorize",
        oauth_token_url=PROVIDER_TOKEN_URL,
        oauth_client_id="test-client-id",
        oauth_client_secret="test-client-secret",
        oauth_redirect_uri="http://localhost:8765/auth/callback",
        oauth_scope="openid email",
        authorization_extra_params={"access_type": "offline", "prompt": "consent"},
        backend_base_url=BACKEND_URL,
        backend_api_key="anon-key",
    )


@pytest.fixture
def encryption_key() -> str:
    """Generate a Fernet key."""
    return Fernet.generate_key().decode()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def recorder() -> DiagnosticsRecorder:
    return DiagnosticsRecorder()


@pytest.fixture
def store(
    storage: InMemoryStorage,
    clock: FakeClock,
    recorder: DiagnosticsRecorder,
) -> PKCEParameterStore:
    """Create a parameter store over in-memory storage with a fake clock."""
    return PKCEParameterStore(storage, clock=clock, recorder=recorder)
