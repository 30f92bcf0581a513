"""Anti-CSRF state issuing and verification."""

from __future__ import annotations

from pkce_auth.logging_config import get_logger
from pkce_auth.oauth.crypto import generate_state
from pkce_auth.security import constant_time_equals, truncate

logger = get_logger(__name__)


class StateValidator:
    """Issues and verifies the OAuth state parameter.

    When no state was stored, verification fails closed unless
    allow_missing_state is set explicitly; that mode is logged on
    construction and on every skipped check.
    """

    def __init__(
        self,
        allow_missing_state: bool = False,
        allow_insecure_random: bool = False,
    ) -> None:
        self.allow_missing_state = allow_missing_state
        self._allow_insecure_random = allow_insecure_random
        if allow_missing_state:
            logger.warning(
                "State verification is configured to be skipped when no state was stored"
            )

    def issue(self) -> str:
        """Generate a new random state value."""
        return generate_state(allow_insecure=self._allow_insecure_random)

    def verify(self, received: str | None, stored: str | None) -> bool:
        """Check the callback state against the stored one.

        Args:
            received: State from the callback query
            stored: State persisted at sign-in start

        Returns:
            True if the states match (or the missing-state opt-out applies)
        """
        if not stored:
            if self.allow_missing_state:
                logger.warning("No stored state; skipping verification (allow_missing_state)")
                return True
            logger.warning("No stored state to verify against; rejecting callback")
            return False

        if not received:
            logger.warning("Callback carried no state parameter")
            return False

        is_valid = constant_time_equals(received, stored)
        if not is_valid:
            logger.warning(
                "State mismatch (stored %s, received %s)",
                truncate(stored),
                truncate(received),
            )
        return is_valid
