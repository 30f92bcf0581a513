"""Tests for error kinds and exceptions."""

from __future__ import annotations

import pytest

from pkce_auth.errors import (
    CryptoUnavailableError,
    ErrorKind,
    NetworkError,
    ProviderError,
    StorageUnavailableError,
    UnexpectedResponseError,
    is_safe_provider_message,
    user_message,
)


class TestExceptions:
    """Tests for exception classes."""

    def test_kinds(self) -> None:
        """Test that each exception carries its kind."""
        assert CryptoUnavailableError().kind == ErrorKind.CRYPTO_UNAVAILABLE
        assert StorageUnavailableError().kind == ErrorKind.STORAGE_UNAVAILABLE
        assert ProviderError().kind == ErrorKind.PROVIDER_ERROR
        assert NetworkError().kind == ErrorKind.NETWORK_ERROR
        assert UnexpectedResponseError().kind == ErrorKind.UNEXPECTED_RESPONSE

    def test_retryable(self) -> None:
        """Test that only provider rejections stop the fallback chain."""
        assert ProviderError.retryable is False
        assert NetworkError.retryable is True
        assert UnexpectedResponseError.retryable is True

    def test_str(self) -> None:
        """Test string representation."""
        assert str(StorageUnavailableError("disk full")) == "[storage_unavailable] disk full"
        assert str(NetworkError("down", status_code=503)) == "[network_error] [503] down"

    def test_unexpected_response_custom_kind(self) -> None:
        """Test overriding the kind of an unexpected response."""
        error = UnexpectedResponseError("no verifier", kind=ErrorKind.VERIFIER_MISSING)
        assert error.kind == ErrorKind.VERIFIER_MISSING
        assert error.retryable is True


class TestIsSafeProviderMessage:
    """Tests for is_safe_provider_message function."""

    def test_standard_code(self) -> None:
        """Test that plain descriptions of standard codes are safe."""
        assert is_safe_provider_message("access_denied", "The user denied access") is True

    @pytest.mark.parametrize(
        ("error_code", "description"),
        [
            (None, "Denied"),
            ("access_denied", None),
            ("access_denied", ""),
            ("custom_vendor_error", "Denied"),
            ("access_denied", "<b>Denied</b>"),
            ("access_denied", "line one\nline two"),
            ("access_denied", "x" * 201),
        ],
    )
    def test_unsafe(self, error_code: str | None, description: str | None) -> None:
        """Test descriptions that must not be displayed."""
        assert is_safe_provider_message(error_code, description) is False


class TestUserMessage:
    """Tests for user_message function."""

    def test_success(self) -> None:
        """Test the success message."""
        assert user_message(None) == "Sign-in completed."

    @pytest.mark.parametrize("kind", [ErrorKind.VERIFIER_MISSING, ErrorKind.VERIFIER_EXPIRED])
    def test_expired_attempt(self, kind: ErrorKind) -> None:
        """Test that missing and expired verifiers ask for a restart."""
        assert "expired" in user_message(kind)

    def test_state_mismatch(self) -> None:
        """Test the stale session message."""
        message = user_message(ErrorKind.STATE_MISMATCH)
        assert "stale session" in message
        assert "restart sign-in" in message

    def test_provider_message_used(self) -> None:
        """Test that a safe provider message is shown as is."""
        assert user_message(ErrorKind.PROVIDER_ERROR, "Access denied") == "Access denied"
        assert "rejected" in user_message(ErrorKind.PROVIDER_ERROR)

    def test_generic_with_reference(self) -> None:
        """Test that generic failures carry the reference id."""
        message = user_message(ErrorKind.EXCHANGE_EXHAUSTED, reference_id="abc123def456")
        assert message.endswith("(reference: abc123def456)")

    def test_generic_without_reference(self) -> None:
        """Test the generic message without reference id."""
        assert "reference" not in user_message(ErrorKind.NETWORK_ERROR)
