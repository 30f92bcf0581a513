"""Settings for the PKCE auth manager.

Provider endpoints, backend location, parameter TTLs and the storage
used across the authorization redirect. Values come from PKCE_AUTH_*
environment variables, a .env file, a JSON/YAML file and CLI flags.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    ValidationInfo,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "PKCE_AUTH_"

GOOGLE_AUTHORIZATION_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


class ConfigError(Exception):
    """Raised when configuration validation fails."""


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Environment(str, Enum):
    """Deployment environments."""

    LOCAL = "local"
    DEV = "dev"
    STAGE = "stage"
    PROD = "prod"


class Config(BaseModel):
    """Sign-in configuration.

    Only oauth_client_id and oauth_redirect_uri are needed to run a
    flow; the backend strategies are enabled by backend_base_url.
    """

    # Core settings
    app_name: str = Field(default="PKCE Auth Manager", description="Application name")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    environment: Environment = Field(
        default=Environment.LOCAL, description="Deployment environment"
    )

    # Callback server settings
    host: str = Field(default="127.0.0.1", description="Callback server bind host")
    port: int = Field(default=8765, ge=1, le=65535, description="Callback server bind port")

    # Upstream OAuth provider
    default_provider: str = Field(default="google", description="Provider used when none given")
    oauth_client_id: str | None = Field(default=None, description="OAuth client identifier")
    oauth_client_secret: SecretStr | None = Field(
        default=None, description="OAuth client secret (confidential clients only)"
    )
    oauth_authorization_url: str = Field(
        default=GOOGLE_AUTHORIZATION_URL, description="OAuth authorization endpoint URL"
    )
    oauth_token_url: str = Field(
        default=GOOGLE_TOKEN_URL, description="Upstream OAuth token endpoint URL"
    )
    oauth_scope: str = Field(
        default="openid email profile", description="OAuth scopes (space-separated)"
    )
    oauth_redirect_uri: str | None = Field(
        default=None, description="OAuth callback/redirect URI"
    )
    authorization_extra_params: dict[str, str] = Field(
        default_factory=dict,
        description="Extra authorization URL parameters (e.g. access_type, prompt)",
    )

    # Identity/session backend
    backend_base_url: str | None = Field(
        default=None, description="Identity backend base URL"
    )
    backend_token_path: str = Field(
        default="/auth/v1/token?grant_type=pkce",
        description="Backend token endpoint path",
    )
    backend_api_key: SecretStr | None = Field(
        default=None, description="API key sent to the identity backend"
    )

    # PKCE parameter lifetime
    pkce_ttl_seconds: int = Field(default=600, ge=1, description="PKCE parameter TTL")
    pkce_ttl_overrides: dict[str, int] = Field(
        default_factory=dict, description="Per-provider TTL overrides in seconds"
    )

    # Code exchange
    exchange_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for each exchange strategy"
    )

    # Explicit opt-outs, both logged when enabled
    allow_missing_state: bool = Field(
        default=False, description="Skip state verification when no state was stored"
    )
    allow_insecure_random: bool = Field(
        default=False, description="Permit a non-secure random fallback (never in prod)"
    )

    # Persisted parameter storage
    storage_path: str | None = Field(
        default=None, description="Path of the encrypted parameter store"
    )
    storage_encryption_key: SecretStr | None = Field(
        default=None, description="Fernet encryption key for the parameter store"
    )

    # Callback server redirects
    post_login_redirect: str | None = Field(
        default=None, description="Where to send the browser after sign-in"
    )
    login_error_redirect: str | None = Field(
        default=None, description="Where to send the browser when sign-in fails"
    )

    model_config = {
        "extra": "allow",
        "validate_assignment": True,
    }

    @field_validator("log_level", "environment", mode="before")
    @classmethod
    def normalize_enum_case(cls, v: Any, info: ValidationInfo) -> Any:
        """Accept log levels and environments in any case."""
        if not isinstance(v, str):
            return v
        return v.upper() if info.field_name == "log_level" else v.lower()

    @field_validator("pkce_ttl_overrides")
    @classmethod
    def validate_ttl_overrides(cls, v: dict[str, int]) -> dict[str, int]:
        """Reject non-positive TTL overrides."""
        invalid = sorted(provider for provider, ttl in v.items() if ttl <= 0)
        if invalid:
            msg = f"pkce_ttl_overrides must be positive for: {', '.join(invalid)}"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_storage(self) -> Config:
        """Validate parameter storage configuration."""
        if self.storage_path and not self.storage_encryption_key:
            msg = "storage_encryption_key is required when storage_path is set"
            raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def validate_insecure_random(self) -> Config:
        """Forbid the insecure random fallback in production."""
        if self.allow_insecure_random and self.environment == Environment.PROD:
            msg = "allow_insecure_random cannot be enabled in the prod environment"
            raise ValueError(msg)
        return self

    def missing_flow_settings(self) -> list[str]:
        """List settings required to run a sign-in flow that are unset."""
        required_fields = [
            ("oauth_client_id", self.oauth_client_id),
            ("oauth_redirect_uri", self.oauth_redirect_uri),
        ]
        return [name for name, value in required_fields if not value]


def _get_env_value(key: str, prefix: str = ENV_PREFIX) -> str | None:
    """Get environment variable value with prefix."""
    return os.environ.get(f"{prefix}{key.upper()}")


_INT_FIELDS = ("port", "pkce_ttl_seconds")
_FLOAT_FIELDS = ("exchange_timeout_seconds",)
_JSON_FIELDS = ("authorization_extra_params", "pkce_ttl_overrides")


def _load_env_config() -> dict[str, Any]:
    """Load configuration from environment variables."""
    config: dict[str, Any] = {}
    for field_name in Config.model_fields:
        value: Any = _get_env_value(field_name)
        if value is None:
            continue
        if field_name in _JSON_FIELDS:
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                msg = f"{ENV_PREFIX}{field_name.upper()} must be a JSON object: {e}"
                raise ConfigError(msg) from e
        elif value.lower() in ("true", "false", "yes", "no"):
            value = value.lower() in ("true", "yes")
        elif field_name in _INT_FIELDS:
            with contextlib.suppress(ValueError):
                value = int(value)
        elif field_name in _FLOAT_FIELDS:
            with contextlib.suppress(ValueError):
                value = float(value)
        config[field_name] = value

    return config


def _load_file_config(path: str | Path) -> dict[str, Any]:
    """Load configuration from a file (JSON or YAML)."""
    path = Path(path)
    if not path.exists():
        msg = f"Configuration file not found: {path}"
        raise ConfigError(msg)

    suffix = path.suffix.lower()
    content = path.read_text()

    if suffix == ".json":
        return dict(json.loads(content))

    if suffix in (".yaml", ".yml"):
        import yaml

        return dict(yaml.safe_load(content) or {})

    msg = f"Unsupported configuration file format: {suffix}"
    raise ConfigError(msg)


def _redact_for_log(key: str, value: Any) -> str:
    """Redact sensitive values for logging."""
    secret_keys = {
        "oauth_client_secret",
        "backend_api_key",
        "storage_encryption_key",
    }
    if key in secret_keys and value:
        return "***"
    return str(value)


def load_config(
    path: str | Path | None = None,
    cli_args: dict[str, Any] | None = None,
) -> Config:
    """Load and validate configuration.

    Precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Configuration file
    4. Model defaults

    Args:
        path: Optional path to configuration file
        cli_args: Optional CLI argument overrides

    Returns:
        Validated Config instance

    Raises:
        ConfigError: If configuration is invalid
    """
    load_dotenv()

    config_dict: dict[str, Any] = {}
    if path:
        logger.debug("Loading configuration from file: %s", path)
        config_dict.update(_load_file_config(path))

    for key, value in _load_env_config().items():
        config_dict[key] = value
        logger.debug("Config %s from environment: %s", key, _redact_for_log(key, value))

    if cli_args:
        for key, value in cli_args.items():
            if value is not None:
                config_dict[key] = value
                logger.debug("Config %s from CLI: %s", key, _redact_for_log(key, value))

    try:
        return Config(**config_dict)
    except Exception as e:
        msg = f"Configuration validation failed: {e}"
        raise ConfigError(msg) from e
