"""Authenticated session returned by a successful code exchange."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from pkce_auth.logging_config import get_logger
from pkce_auth.oauth.crypto import base64url_decode

logger = get_logger(__name__)

# Used when a token response carries no expiry at all
DEFAULT_EXPIRES_IN = 3600


@dataclass
class OAuthSession:
    """Session tokens for the signed-in user.

    The caller owns the session once it is returned; nothing here
    caches it.
    """

    access_token: str = field(repr=False)
    refresh_token: str | None = field(repr=False)
    expires_at: datetime
    user_id: str | None = None
    token_type: str = "Bearer"
    strategy: str | None = None

    @property
    def is_expired(self) -> bool:
        """Check if the access token is expired."""
        return datetime.now(UTC) >= self.expires_at

    def auth_headers(self) -> dict[str, str]:
        """Authorization header for requests made with this session."""
        return {"Authorization": f"{self.token_type} {self.access_token}"}

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe view without the tokens."""
        return {
            "user_id": self.user_id,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
            "has_refresh_token": bool(self.refresh_token),
            "strategy": self.strategy,
        }

    @classmethod
    def from_backend_response(
        cls,
        response: dict[str, Any],
        strategy: str | None = None,
    ) -> OAuthSession:
        """Create a session from an identity backend token response.

        The backend answers with access_token, refresh_token, either
        expires_at (epoch seconds) or expires_in, and a user object.

        Raises:
            ValueError: If the response has no access token
        """
        access_token = _require_access_token(response)

        expires_at_raw = response.get("expires_at")
        if expires_at_raw is not None:
            expires_at = datetime.fromtimestamp(float(expires_at_raw), tz=UTC)
        else:
            expires_at = _expiry_from(response.get("expires_in"))

        user = response.get("user")
        user_id = user.get("id") if isinstance(user, dict) else None

        return cls(
            access_token=access_token,
            refresh_token=response.get("refresh_token"),
            expires_at=expires_at,
            user_id=str(user_id) if user_id is not None else None,
            token_type=_token_type(response),
            strategy=strategy,
        )

    @classmethod
    def from_provider_response(
        cls,
        response: dict[str, Any],
        strategy: str | None = None,
    ) -> OAuthSession:
        """Create a session from a standard OAuth 2.0 token response.

        The user id comes from the ``sub`` claim of the id_token when
        one is present. The id_token is not verified here; it arrived
        directly from the token endpoint over TLS.

        Raises:
            ValueError: If the response has no access token
        """
        access_token = _require_access_token(response)

        id_token = response.get("id_token")
        user_id = _subject_from_id_token(id_token) if isinstance(id_token, str) else None

        return cls(
            access_token=access_token,
            refresh_token=response.get("refresh_token"),
            expires_at=_expiry_from(response.get("expires_in")),
            user_id=user_id,
            token_type=_token_type(response),
            strategy=strategy,
        )


def _require_access_token(response: dict[str, Any]) -> str:
    access_token = response.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        msg = "Token response has no access_token"
        raise ValueError(msg)
    return access_token


def _token_type(response: dict[str, Any]) -> str:
    token_type = response.get("token_type") or "Bearer"
    # Providers send "bearer" as often as "Bearer"
    return "Bearer" if str(token_type).lower() == "bearer" else str(token_type)


def _expiry_from(expires_in: Any) -> datetime:
    seconds = DEFAULT_EXPIRES_IN if expires_in is None else float(expires_in)
    return datetime.now(UTC) + timedelta(seconds=seconds)


def _subject_from_id_token(id_token: str) -> str | None:
    """Read the sub claim from a JWT payload without verifying it."""
    parts = id_token.split(".")
    if len(parts) != 3:
        logger.warning("id_token is not a JWT; ignoring it")
        return None

    try:
        claims = json.loads(base64url_decode(parts[1]))
    except ValueError as e:
        logger.warning("Could not decode id_token payload: %s", e)
        return None

    if not isinstance(claims, dict):
        return None
    sub = claims.get("sub")
    return str(sub) if sub is not None else None
