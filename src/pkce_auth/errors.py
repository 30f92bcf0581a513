"""Error kinds and exceptions for the PKCE sign-in flow."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Failure categories surfaced to callers."""

    CRYPTO_UNAVAILABLE = "crypto_unavailable"
    VERIFIER_MISSING = "verifier_missing"
    VERIFIER_EXPIRED = "verifier_expired"
    STATE_MISMATCH = "state_mismatch"
    PROVIDER_ERROR = "provider_error"
    NETWORK_ERROR = "network_error"
    EXCHANGE_EXHAUSTED = "exchange_exhausted"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    INVALID_CALLBACK = "invalid_callback"
    UNEXPECTED_RESPONSE = "unexpected_response"


# Standard OAuth 2.0 error codes whose descriptions may be shown to users
SAFE_PROVIDER_ERRORS = frozenset({
    "access_denied",
    "invalid_grant",
    "invalid_request",
    "invalid_scope",
    "unauthorized_client",
    "unsupported_response_type",
    "temporarily_unavailable",
    "server_error",
    "consent_required",
    "login_required",
    "interaction_required",
})

MAX_DISPLAY_MESSAGE_LENGTH = 200


class PKCEAuthError(Exception):
    """Base exception for the PKCE sign-in flow.

    Attributes:
        message: Human-readable error message
        kind: Error category
    """

    def __init__(self, message: str, kind: ErrorKind) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class CryptoUnavailableError(PKCEAuthError):
    """Raised when no secure random source exists.

    This is the only condition that aborts sign-in eagerly.
    """

    def __init__(self, message: str = "Secure random source unavailable.") -> None:
        super().__init__(message, ErrorKind.CRYPTO_UNAVAILABLE)


class StorageUnavailableError(PKCEAuthError):
    """Raised when persisted key-value storage cannot be read or written."""

    def __init__(self, message: str = "Persistent storage unavailable.") -> None:
        super().__init__(message, ErrorKind.STORAGE_UNAVAILABLE)


class ExchangeError(PKCEAuthError):
    """Raised by an exchange strategy when a code exchange fails.

    Attributes:
        status_code: HTTP status code (if applicable)
        response_body: Raw response body (if available)
        provider_message: Upstream error description (if any)
    """

    retryable = True

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status_code: int | None = None,
        response_body: dict | str | None = None,
        provider_message: str | None = None,
    ) -> None:
        super().__init__(message, kind)
        self.status_code = status_code
        self.response_body = response_body
        self.provider_message = provider_message

    def __str__(self) -> str:
        if self.status_code:
            return f"[{self.kind.value}] [{self.status_code}] {self.message}"
        return super().__str__()


class ProviderError(ExchangeError):
    """Non-retryable rejection, e.g. code already used or access denied."""

    retryable = False

    def __init__(
        self,
        message: str = "The provider rejected the authorization code.",
        status_code: int | None = None,
        response_body: dict | str | None = None,
        provider_message: str | None = None,
    ) -> None:
        super().__init__(
            message, ErrorKind.PROVIDER_ERROR, status_code, response_body, provider_message
        )


class NetworkError(ExchangeError):
    """Transport failure, timeout or transient server error."""

    def __init__(
        self,
        message: str = "Network failure during code exchange.",
        status_code: int | None = None,
        response_body: dict | str | None = None,
    ) -> None:
        super().__init__(message, ErrorKind.NETWORK_ERROR, status_code, response_body)


class UnexpectedResponseError(ExchangeError):
    """Malformed response or a rejection that points at misconfiguration."""

    def __init__(
        self,
        message: str = "Unexpected response during code exchange.",
        status_code: int | None = None,
        response_body: dict | str | None = None,
        kind: ErrorKind = ErrorKind.UNEXPECTED_RESPONSE,
    ) -> None:
        super().__init__(message, kind, status_code, response_body)


def is_safe_provider_message(error_code: str | None, description: str | None) -> bool:
    """Check whether an upstream error description can be shown to a user.

    Args:
        error_code: OAuth error code from the provider
        description: Accompanying error_description

    Returns:
        True for short plain-text descriptions of standard error codes
    """
    if not error_code or not description:
        return False
    if error_code not in SAFE_PROVIDER_ERRORS:
        return False
    if len(description) > MAX_DISPLAY_MESSAGE_LENGTH:
        return False
    return description.isprintable() and not any(c in description for c in "<>")


def user_message(
    kind: ErrorKind | None,
    provider_message: str | None = None,
    reference_id: str | None = None,
) -> str:
    """Map an error kind to the text shown to the signing-in user.

    Args:
        kind: Error kind, None for success
        provider_message: Upstream message already checked for display safety
        reference_id: Diagnostics reference for support

    Returns:
        User-facing message
    """
    if kind is None:
        return "Sign-in completed."

    if kind in (ErrorKind.VERIFIER_MISSING, ErrorKind.VERIFIER_EXPIRED):
        return "Your sign-in attempt has expired. Please restart sign-in."
    if kind == ErrorKind.STATE_MISMATCH:
        return (
            "Sign-in could not be verified, possibly because of a stale session. "
            "Please restart sign-in."
        )
    if kind == ErrorKind.PROVIDER_ERROR:
        if provider_message:
            return provider_message
        return "The sign-in provider rejected the request. Please restart sign-in."
    if kind == ErrorKind.INVALID_CALLBACK:
        return "Invalid authentication callback. Please restart sign-in."
    if kind == ErrorKind.CRYPTO_UNAVAILABLE:
        return "Secure sign-in is not available on this device."

    suffix = f" (reference: {reference_id})" if reference_id else ""
    return f"Sign-in could not be completed. Please try again.{suffix}"
