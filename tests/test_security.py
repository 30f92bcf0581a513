"""Tests for security module."""

from __future__ import annotations

from pkce_auth.security import (
    constant_time_equals,
    generate_reference_id,
    mask_email,
    redact,
    redact_details,
    truncate,
)


class TestRedact:
    """Tests for redact function."""

    def test_redact_non_empty(self) -> None:
        """Test that non-empty values are redacted."""
        assert redact("secret123") == "***"
        assert redact("a") == "***"

    def test_redact_empty(self) -> None:
        """Test that empty values show <empty>."""
        assert redact("") == "<empty>"
        assert redact(None) == "<empty>"


class TestTruncate:
    """Tests for truncate function."""

    def test_keeps_prefix(self) -> None:
        """Test that long values keep a short prefix."""
        assert truncate("abcdefghijklmnop") == "abcdefgh..."
        assert truncate("abcdefghijklmnop", keep=4) == "abcd..."

    def test_short_values_unchanged(self) -> None:
        """Test that short values are kept whole."""
        assert truncate("abc") == "abc"

    def test_empty(self) -> None:
        """Test empty values."""
        assert truncate(None) == "<empty>"
        assert truncate("") == "<empty>"


class TestMaskEmail:
    """Tests for mask_email function."""

    def test_masks_local_part(self) -> None:
        """Test that only the first characters of the local part survive."""
        assert mask_email("alice@example.com") == "ali***@example.com"

    def test_masks_inside_text(self) -> None:
        """Test masking an address embedded in a message."""
        text = mask_email("signed in as bob.smith@example.org today")
        assert text == "signed in as bob***@example.org today"

    def test_no_email(self) -> None:
        """Test that plain text is untouched."""
        assert mask_email("no address here") == "no address here"


class TestConstantTimeEquals:
    """Tests for constant_time_equals function."""

    def test_equal_strings(self) -> None:
        """Test equal strings return True."""
        assert constant_time_equals("abc", "abc") is True

    def test_unequal_strings(self) -> None:
        """Test unequal strings return False."""
        assert constant_time_equals("abc", "def") is False
        assert constant_time_equals("abc", "abcd") is False

    def test_none_values(self) -> None:
        """Test None handling."""
        assert constant_time_equals(None, None) is True
        assert constant_time_equals(None, "abc") is False
        assert constant_time_equals("abc", None) is False


class TestGenerateReferenceId:
    """Tests for generate_reference_id function."""

    def test_format(self) -> None:
        """Test that reference ids are short hex strings."""
        reference_id = generate_reference_id()
        assert len(reference_id) == 12
        int(reference_id, 16)

    def test_unique(self) -> None:
        """Test that reference ids are unique."""
        assert len({generate_reference_id() for _ in range(100)}) == 100


class TestRedactDetails:
    """Tests for redact_details function."""

    def test_masks_secrets(self) -> None:
        """Test that tokens, secrets, codes and verifiers are masked."""
        details = redact_details({
            "access_token": "abc123",
            "client_secret": "s3cret",
            "apikey": "anon",
            "code": "auth-code",
            "code_verifier": "verifier",
            "strategy": "backend",
        })

        assert details == {
            "access_token": "***",
            "client_secret": "***",
            "apikey": "***",
            "code": "***",
            "code_verifier": "***",
            "strategy": "backend",
        }

    def test_code_only_masked_on_exact_key(self) -> None:
        """Test that keys merely containing 'code' are kept."""
        details = redact_details({"status_code": 400, "error_code": "bad_code"})
        assert details == {"status_code": 400, "error_code": "bad_code"}

    def test_truncates_state_and_challenge(self) -> None:
        """Test that correlation values are shortened."""
        details = redact_details({"state": "s" * 43, "code_challenge": "c" * 43})

        assert details["state"] == "ssssssss..."
        assert details["code_challenge"] == "cccccccc..."

    def test_masks_emails(self) -> None:
        """Test that emails in values are obscured."""
        details = redact_details({"user": "alice@example.com"})
        assert details["user"] == "ali***@example.com"

    def test_cuts_long_strings(self) -> None:
        """Test that long strings are truncated."""
        details = redact_details({"message": "x" * 500})
        assert details["message"] == "x" * 200 + "..."

    def test_nested_values(self) -> None:
        """Test that nested dicts and lists are redacted."""
        details = redact_details({
            "response": {"refresh_token": "r", "error": "invalid_grant"},
            "written": ["pkce.google", "pkce.default"],
        })

        assert details["response"] == {"refresh_token": "***", "error": "invalid_grant"}
        assert details["written"] == ["pkce.google", "pkce.default"]

    def test_input_not_modified(self) -> None:
        """Test that redaction returns a copy."""
        details = {"access_token": "abc"}
        redact_details(details)
        assert details == {"access_token": "abc"}
