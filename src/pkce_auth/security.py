"""Security utilities for the PKCE auth manager.

Provides secret redaction for logs and diagnostics, constant-time
comparison, and random identifiers.
"""

from __future__ import annotations

import hmac
import re
import secrets
from typing import Any

# Keys whose values are masked wherever they appear as a substring
SENSITIVE_SUBSTRINGS = frozenset({
    "token",
    "secret",
    "password",
    "api_key",
    "apikey",
})

# Keys masked only on exact match ("code" must not hit "status_code")
SENSITIVE_EXACT_KEYS = frozenset({
    "authorization",
    "code",
    "auth_code",
    "authorization_code",
    "code_verifier",
    "verifier",
    "cookie",
})

# Public correlation values that are truncated rather than masked
TRUNCATED_KEYS = frozenset({"state", "code_challenge", "challenge"})

MAX_DETAIL_LENGTH = 200

_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+\-]{1,3})[A-Za-z0-9._%+\-]*(@[A-Za-z0-9.\-]+)")


def redact(value: str | None) -> str:
    """Redact a potentially sensitive value for safe logging.

    Args:
        value: The value to redact

    Returns:
        "***" if value is non-empty, "<empty>" if empty/None
    """
    if value is None or value == "":
        return "<empty>"
    return "***"


def truncate(value: str | None, keep: int = 8) -> str:
    """Keep a short prefix of a value for correlation in logs.

    Args:
        value: Value to shorten
        keep: Number of leading characters to keep

    Returns:
        Prefix followed by "...", or "<empty>"
    """
    if not value:
        return "<empty>"
    if len(value) <= keep:
        return value
    return f"{value[:keep]}..."


def mask_email(text: str) -> str:
    """Obscure email addresses inside a string.

    "alice@example.com" becomes "ali***@example.com".
    """
    return _EMAIL_RE.sub(r"\1***\2", text)


def constant_time_equals(a: str | None, b: str | None) -> bool:
    """Compare two strings in constant time to prevent timing attacks.

    Args:
        a: First string to compare
        b: Second string to compare

    Returns:
        True if strings are equal, False otherwise
    """
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


def generate_reference_id() -> str:
    """Generate a short identifier users can quote to support."""
    return secrets.token_hex(6)


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    if lowered in SENSITIVE_EXACT_KEYS:
        return True
    return any(sensitive in lowered for sensitive in SENSITIVE_SUBSTRINGS)


def _redact_value(key: str, value: Any) -> Any:
    if isinstance(value, dict):
        return redact_details(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value(key, item) for item in value]
    if _is_sensitive_key(key):
        return redact(None if value is None else str(value))
    if isinstance(value, str):
        if key.lower() in TRUNCATED_KEYS:
            return truncate(value)
        text = mask_email(value)
        if len(text) > MAX_DETAIL_LENGTH:
            text = f"{text[:MAX_DETAIL_LENGTH]}..."
        return text
    return value


def redact_details(details: dict[str, Any]) -> dict[str, Any]:
    """Produce a copy of diagnostic details that is safe to keep.

    Tokens, secrets, codes and verifiers are masked; state and
    challenge values are truncated; emails are obscured; long
    strings are cut.

    Args:
        details: Arbitrary details about an event

    Returns:
        Redacted copy
    """
    return {str(key): _redact_value(str(key), value) for key, value in details.items()}
