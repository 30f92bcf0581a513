"""Cryptographic primitives for PKCE (RFC 7636).

Secure random bytes, SHA-256 and unpadded base64url (RFC 4648 section 5).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import random
import re
import secrets

from pkce_auth.errors import CryptoUnavailableError
from pkce_auth.logging_config import get_logger

logger = get_logger(__name__)

# 96 bytes encode to exactly 128 base64url characters
VERIFIER_BYTES = 96
MIN_VERIFIER_BYTES = 32
MAX_VERIFIER_BYTES = 96
STATE_BYTES = 32

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128

_VERIFIER_RE = re.compile(r"[A-Za-z0-9\-._~]{43,128}")
_BASE64URL_RE = re.compile(r"[A-Za-z0-9_-]*")


def generate_random_bytes(n: int, allow_insecure: bool = False) -> bytes:
    """Generate n cryptographically random bytes.

    Args:
        n: Number of bytes
        allow_insecure: Permit a non-secure fallback when the OS source
            is missing. Only for non-production builds.

    Returns:
        Random bytes

    Raises:
        ValueError: If n < 1
        CryptoUnavailableError: If no secure source exists and the
            insecure fallback is not allowed
    """
    if n < 1:
        msg = "n must be at least 1"
        raise ValueError(msg)

    try:
        return secrets.token_bytes(n)
    except (NotImplementedError, OSError) as e:
        if not allow_insecure:
            logger.error("Secure random source unavailable: %s", e)
            raise CryptoUnavailableError(f"Secure random source unavailable: {e}") from e

    logger.warning("INSECURE random fallback in use; never enable this in production")
    return random.Random().randbytes(n)  # noqa: S311  # nosec B311


def sha256(data: bytes) -> bytes:
    """Return the 32-byte SHA-256 digest of data."""
    return hashlib.sha256(data).digest()


def base64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(text: str) -> bytes:
    """Decode unpadded base64url.

    Raises:
        ValueError: If text contains characters outside the alphabet
            or has an impossible length
    """
    if not _BASE64URL_RE.fullmatch(text):
        msg = "Invalid base64url characters"
        raise ValueError(msg)
    if len(text) % 4 == 1:
        msg = "Invalid base64url length"
        raise ValueError(msg)

    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except binascii.Error as e:
        raise ValueError(f"Invalid base64url data: {e}") from e


def generate_code_verifier(nbytes: int = VERIFIER_BYTES, allow_insecure: bool = False) -> str:
    """Generate a code verifier of 43-128 URL-safe characters.

    Args:
        nbytes: Number of random bytes, between 32 and 96

    Returns:
        Base64url-encoded verifier

    Raises:
        ValueError: If nbytes is out of range
    """
    if not MIN_VERIFIER_BYTES <= nbytes <= MAX_VERIFIER_BYTES:
        msg = f"nbytes must be between {MIN_VERIFIER_BYTES} and {MAX_VERIFIER_BYTES}"
        raise ValueError(msg)

    return base64url_encode(generate_random_bytes(nbytes, allow_insecure))


def generate_code_challenge(verifier: str) -> str:
    """Compute the S256 challenge: BASE64URL(SHA256(ascii(verifier)))."""
    return base64url_encode(sha256(verifier.encode("ascii")))


def generate_state(nbytes: int = STATE_BYTES, allow_insecure: bool = False) -> str:
    """Generate an anti-CSRF state value."""
    return base64url_encode(generate_random_bytes(nbytes, allow_insecure))


def is_valid_verifier(value: object) -> bool:
    """Check verifier length and character set."""
    return isinstance(value, str) and _VERIFIER_RE.fullmatch(value) is not None
