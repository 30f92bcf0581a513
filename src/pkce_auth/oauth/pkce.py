"""PKCE parameter generation and redundant persistence.

Implements RFC 7636 parameter sets that survive the authorization
redirect. Each set is written under several keys so that a reader
that only knows one naming convention still finds it, and read back
through a single explicit fallback chain.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from pkce_auth.errors import ErrorKind, StorageUnavailableError
from pkce_auth.logging_config import get_logger
from pkce_auth.oauth.crypto import (
    generate_code_challenge,
    generate_code_verifier,
    is_valid_verifier,
)
from pkce_auth.oauth.state import StateValidator
from pkce_auth.security import constant_time_equals, redact, truncate

if TYPE_CHECKING:
    from collections.abc import Callable

    from pkce_auth.diagnostics import DiagnosticsRecorder
    from pkce_auth.oauth.storage import KeyValueStorage

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 600
CHALLENGE_METHOD = "S256"

_PROVIDER_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_\-]{0,63}")
_RESERVED_SUFFIXES = frozenset({
    "default",
    "verifier",
    "challenge",
    "state",
    "provider",
    "issued_at",
})


@dataclass(frozen=True)
class PKCEParameters:
    """One PKCE parameter set for a pending sign-in.

    Attributes:
        code_verifier: Secret revealed only at token exchange
        code_challenge: BASE64URL(SHA256(code_verifier))
        state: Anti-CSRF value round-tripped through the redirect
        created_at: Creation time in epoch seconds
        provider: Provider the set was generated for
        challenge_method: Always "S256"
    """

    code_verifier: str
    code_challenge: str
    state: str | None
    created_at: float
    provider: str
    challenge_method: str = CHALLENGE_METHOD

    def __repr__(self) -> str:
        return (
            f"PKCEParameters(provider={self.provider!r}, "
            f"code_verifier={redact(self.code_verifier)!r}, "
            f"code_challenge={truncate(self.code_challenge)!r}, "
            f"state={truncate(self.state)!r}, created_at={self.created_at!r})"
        )

    def age(self, now: float) -> float:
        """Seconds since creation."""
        return now - self.created_at

    def is_expired(self, ttl_seconds: float, now: float) -> bool:
        """Parameters are valid only while age < ttl."""
        return self.age(now) >= ttl_seconds

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> PKCEParameters:
        """Parse a stored record.

        Raises:
            ValueError: If the record is not valid JSON or lacks fields
        """
        data: Any = json.loads(raw)
        if not isinstance(data, dict):
            msg = "PKCE record is not an object"
            raise ValueError(msg)

        try:
            created_at = float(data["created_at"])
            return cls(
                code_verifier=str(data["code_verifier"]),
                code_challenge=str(data["code_challenge"]),
                state=str(data["state"]) if data.get("state") else None,
                created_at=created_at,
                provider=str(data["provider"]),
                challenge_method=str(data.get("challenge_method", CHALLENGE_METHOD)),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"PKCE record missing or invalid field: {e}") from e


class LookupStatus(str, Enum):
    """Outcome of a parameter lookup."""

    FOUND = "found"
    MISSING = "missing"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Lookup:
    """Result of PKCEParameterStore.lookup."""

    status: LookupStatus
    params: PKCEParameters | None = None
    source: str | None = None


class PKCEParameterStore:
    """Generates, persists, retrieves and invalidates PKCE parameters.

    Keys (with the default namespace):
        pkce.<provider>   canonical full record
        pkce.default      provider-agnostic full record
        pkce.verifier, pkce.challenge, pkce.state
                          decomposed values
        pkce.provider, pkce.issued_at
                          owner and issue time of the decomposed values

    Only one pending set per provider per storage is supported; a new
    set replaces the previous one.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        ttl_overrides: dict[str, int] | None = None,
        clock: Callable[[], float] = time.time,
        state_validator: StateValidator | None = None,
        recorder: DiagnosticsRecorder | None = None,
        allow_insecure_random: bool = False,
        namespace: str = "pkce",
    ) -> None:
        """Initialize the store.

        Args:
            storage: Persisted key-value storage
            ttl_seconds: Default parameter lifetime
            ttl_overrides: Per-provider lifetimes
            clock: Returns the current time in epoch seconds
            state_validator: Issues state values
            recorder: Diagnostics sink
            allow_insecure_random: Permit the non-production random fallback
            namespace: Key prefix
        """
        self._storage = storage
        self._ttl_seconds = ttl_seconds
        self._ttl_overrides = dict(ttl_overrides or {})
        self._clock = clock
        self._state_validator = state_validator or StateValidator(
            allow_insecure_random=allow_insecure_random
        )
        self._recorder = recorder
        self._allow_insecure_random = allow_insecure_random
        self._namespace = namespace
        # Sets whose canonical write failed; only visible to this instance
        self._volatile: dict[str, PKCEParameters] = {}

        self.generic_key = f"{namespace}.default"
        self.verifier_key = f"{namespace}.verifier"
        self.challenge_key = f"{namespace}.challenge"
        self.state_key = f"{namespace}.state"
        self.owner_key = f"{namespace}.provider"
        self.issued_at_key = f"{namespace}.issued_at"

    @property
    def state_validator(self) -> StateValidator:
        return self._state_validator

    def provider_key(self, provider: str) -> str:
        """Canonical key for a provider's record."""
        _check_provider(provider)
        return f"{self._namespace}.{provider}"

    def ttl_for(self, provider: str) -> int:
        """Parameter lifetime for a provider."""
        return self._ttl_overrides.get(provider, self._ttl_seconds)

    def generate(self, provider: str) -> PKCEParameters:
        """Create and persist a fresh parameter set.

        Args:
            provider: Provider name, e.g. "google"

        Returns:
            The new parameters

        Raises:
            CryptoUnavailableError: If no secure random source exists
            ValueError: If the provider name is not usable as a key
        """
        _check_provider(provider)

        verifier = generate_code_verifier(allow_insecure=self._allow_insecure_random)
        params = PKCEParameters(
            code_verifier=verifier,
            code_challenge=generate_code_challenge(verifier),
            state=self._state_validator.issue(),
            created_at=self._clock(),
            provider=provider,
        )

        self.persist(params)

        logger.info(
            "Generated PKCE parameters for %s (verifier length %d, state %s)",
            provider,
            len(verifier),
            truncate(params.state),
        )
        return params

    def persist(self, params: PKCEParameters) -> bool:
        """Write a parameter set under every key.

        Each write is attempted independently. The set counts as
        persisted when the canonical write succeeds; otherwise it is
        kept in-process for this instance only.

        Returns:
            True if the canonical record was written
        """
        canonical_key = self.provider_key(params.provider)
        record = params.to_json()

        writes: list[tuple[str, str | None]] = [
            (canonical_key, record),
            (self.generic_key, record),
            (self.verifier_key, params.code_verifier),
            (self.challenge_key, params.code_challenge),
            (self.state_key, params.state),
            (self.owner_key, params.provider),
            (self.issued_at_key, repr(params.created_at)),
        ]

        written: list[str] = []
        failed: list[str] = []
        for key, value in writes:
            try:
                if value is None:
                    self._storage.remove(key)
                else:
                    self._storage.set(key, value)
                written.append(key)
                logger.debug("Wrote PKCE key %s", key)
            except (StorageUnavailableError, OSError) as e:
                failed.append(key)
                logger.warning("Failed to write PKCE key %s: %s", key, e)

        canonical_ok = canonical_key in written
        if canonical_ok:
            self._volatile.pop(params.provider, None)
        else:
            self._volatile[params.provider] = params
            logger.warning(
                "Canonical PKCE record for %s not persisted; keeping it in-process only, "
                "a callback handled by another process will not find it",
                params.provider,
            )

        self._record(
            "persist",
            canonical_ok,
            provider=params.provider,
            error_kind=None if canonical_ok else ErrorKind.STORAGE_UNAVAILABLE,
            details={"written": written, "failed": failed},
        )
        return canonical_ok

    def lookup(self, provider: str) -> Lookup:
        """Find the pending parameter set for a provider.

        Sources are tried in order: the in-process fallback (only set
        when the canonical write failed, so it is the newest), the
        canonical key, the generic key, then reconstruction from the
        decomposed keys. Corrupt or ill-formed records are skipped.
        The first well-formed record decides; if it has expired, it
        is invalidated.
        """
        _check_provider(provider)
        now = self._clock()
        ttl = self.ttl_for(provider)

        sources: list[tuple[str, Callable[[], PKCEParameters | None]]] = [
            ("memory", lambda: self._volatile.get(provider)),
            ("canonical", lambda: self._load_record(self.provider_key(provider), provider)),
            ("generic", lambda: self._load_record(self.generic_key, provider)),
            ("decomposed", lambda: self._reconstruct(provider)),
        ]

        for source, load in sources:
            params = load()
            if params is None:
                continue
            if not _well_formed(params):
                logger.warning("Ignoring ill-formed PKCE parameters from %s source", source)
                continue

            if params.is_expired(ttl, now):
                logger.warning(
                    "PKCE parameters for %s expired (age %.0fs, ttl %ds); clearing",
                    provider,
                    params.age(now),
                    ttl,
                )
                self.invalidate(provider)
                self._record(
                    "retrieve",
                    False,
                    provider=provider,
                    error_kind=ErrorKind.VERIFIER_EXPIRED,
                    details={"source": source},
                )
                return Lookup(LookupStatus.EXPIRED, None, source)

            logger.debug("Retrieved PKCE parameters for %s from %s source", provider, source)
            self._record("retrieve", True, provider=provider, details={"source": source})
            return Lookup(LookupStatus.FOUND, params, source)

        logger.warning("No PKCE parameters found for %s", provider)
        self._record(
            "retrieve", False, provider=provider, error_kind=ErrorKind.VERIFIER_MISSING
        )
        return Lookup(LookupStatus.MISSING)

    def retrieve(self, provider: str) -> PKCEParameters | None:
        """Return the valid pending parameters for a provider, or None."""
        return self.lookup(provider).params

    def provider_for_state(self, state: str | None) -> str | None:
        """Find the provider whose pending parameters carry a state.

        A callback redirect names no provider, so the state issued at
        sign-in start is what ties it back to the right parameter set.
        Expiry is not checked here; lookup does that.

        Args:
            state: State value from the callback query

        Returns:
            Provider name, or None if no pending set carries the state
        """
        if not state:
            return None

        for provider, params in self._volatile.items():
            if constant_time_equals(params.state, state):
                return provider

        prefix = f"{self._namespace}."
        try:
            keys = sorted(self._storage.keys())
        except (StorageUnavailableError, OSError) as e:
            logger.warning("Cannot list PKCE keys: %s", e)
            keys = []

        record_keys = [self.generic_key] + [
            key
            for key in keys
            if key.startswith(prefix) and key[len(prefix):] not in _RESERVED_SUFFIXES
        ]
        for key in record_keys:
            raw = self._safe_get(key)
            if raw is None:
                continue
            try:
                params = PKCEParameters.from_json(raw)
            except ValueError:
                continue
            if constant_time_equals(params.state, state):
                return params.provider

        owner = self._safe_get(self.owner_key)
        if owner and constant_time_equals(self._safe_get(self.state_key), state):
            return owner

        return None

    def read_decomposed_verifier(self) -> str | None:
        """Read the verifier stored under the decomposed key."""
        return self._safe_get(self.verifier_key)

    def invalidate(self, provider: str) -> None:
        """Delete every key holding parameters for a provider.

        Generic and decomposed keys are only removed when they belong
        to this provider or their owner is unknown. Idempotent; storage
        failures are logged, never raised.
        """
        canonical_key = self.provider_key(provider)
        self._volatile.pop(provider, None)

        keys = [canonical_key]

        generic_owner = self._record_owner(self.generic_key)
        if generic_owner in (None, provider):
            keys.append(self.generic_key)

        decomposed_owner = self._safe_get(self.owner_key)
        if decomposed_owner in (None, provider):
            keys.extend([
                self.verifier_key,
                self.challenge_key,
                self.state_key,
                self.owner_key,
                self.issued_at_key,
            ])

        failed: list[str] = []
        for key in keys:
            try:
                self._storage.remove(key)
            except (StorageUnavailableError, OSError) as e:
                failed.append(key)
                logger.warning("Failed to remove PKCE key %s: %s", key, e)

        logger.info("Invalidated PKCE parameters for %s", provider)
        self._record(
            "invalidate",
            not failed,
            provider=provider,
            error_kind=ErrorKind.STORAGE_UNAVAILABLE if failed else None,
            details={"removed": [k for k in keys if k not in failed], "failed": failed},
        )

    def validate_shape(self, params: object) -> bool:
        """Check that a parameter set is usable right now.

        Pure predicate: non-empty challenge, S256 method, verifier of
        valid length and alphabet, creation time present and not
        expired. Never raises.
        """
        try:
            if not isinstance(params, PKCEParameters) or not _well_formed(params):
                return False
            return not params.is_expired(self.ttl_for(params.provider), self._clock())
        except (TypeError, ValueError, AttributeError):
            return False

    def snapshot(self, provider: str | None = None) -> dict[str, str]:
        """Describe stored PKCE keys with secrets redacted.

        Args:
            provider: Skip other providers' canonical records
        """
        shared = {
            self.generic_key,
            self.verifier_key,
            self.challenge_key,
            self.state_key,
            self.owner_key,
            self.issued_at_key,
        }
        try:
            keys = sorted(k for k in self._storage.keys() if k.startswith(f"{self._namespace}."))
        except (StorageUnavailableError, OSError) as e:
            logger.warning("Cannot list PKCE keys: %s", e)
            return {}
        if provider is not None:
            wanted = self.provider_key(provider)
            keys = [k for k in keys if k in shared or k == wanted]

        now = self._clock()
        result: dict[str, str] = {}
        for key in keys:
            value = self._safe_get(key)
            if value is None:
                continue
            if key == self.verifier_key:
                result[key] = redact(value)
            elif key in (self.challenge_key, self.state_key):
                result[key] = truncate(value)
            elif key in (self.owner_key, self.issued_at_key):
                result[key] = value
            else:
                result[key] = _describe_record(value, now)
        return result

    def _load_record(self, key: str, provider: str) -> PKCEParameters | None:
        raw = self._safe_get(key)
        if raw is None:
            return None

        try:
            params = PKCEParameters.from_json(raw)
        except ValueError as e:
            logger.warning("Ignoring corrupt PKCE record under %s: %s", key, e)
            return None

        if params.provider != provider:
            logger.debug("PKCE record under %s belongs to %s", key, params.provider)
            return None
        return params

    def _reconstruct(self, provider: str) -> PKCEParameters | None:
        verifier = self._safe_get(self.verifier_key)
        if not verifier:
            return None

        owner = self._safe_get(self.owner_key)
        if owner and owner != provider:
            logger.debug("Decomposed PKCE keys belong to %s", owner)
            return None

        issued_at = self._safe_get(self.issued_at_key)
        try:
            created_at = float(issued_at) if issued_at is not None else None
        except ValueError:
            created_at = None
        if created_at is None:
            logger.warning("Decomposed PKCE keys lack a usable issue time; not reconstructing")
            return None

        if not is_valid_verifier(verifier):
            logger.warning("Decomposed PKCE verifier is malformed; not reconstructing")
            return None

        expected_challenge = generate_code_challenge(verifier)
        challenge = self._safe_get(self.challenge_key)
        if challenge and challenge != expected_challenge:
            logger.warning("Decomposed PKCE challenge does not match verifier; not reconstructing")
            return None

        logger.info("Reconstructed PKCE parameters for %s from decomposed keys", provider)
        return PKCEParameters(
            code_verifier=verifier,
            code_challenge=expected_challenge,
            state=self._safe_get(self.state_key) or None,
            created_at=created_at,
            provider=provider,
        )

    def _record_owner(self, key: str) -> str | None:
        raw = self._safe_get(key)
        if raw is None:
            return None
        try:
            return PKCEParameters.from_json(raw).provider
        except ValueError:
            return None

    def _safe_get(self, key: str) -> str | None:
        try:
            return self._storage.get(key)
        except (StorageUnavailableError, OSError) as e:
            logger.warning("Failed to read PKCE key %s: %s", key, e)
            return None

    def _record(self, phase: str, success: bool, **kwargs: Any) -> None:
        if self._recorder is not None:
            self._recorder.append(phase, success, **kwargs)


def _check_provider(provider: str) -> None:
    if not isinstance(provider, str) or not _PROVIDER_RE.fullmatch(provider):
        msg = f"Invalid provider name: {provider!r}"
        raise ValueError(msg)
    if provider in _RESERVED_SUFFIXES:
        msg = f"Provider name {provider!r} is reserved"
        raise ValueError(msg)


def _well_formed(params: PKCEParameters) -> bool:
    created_at = params.created_at
    return (
        isinstance(params.code_challenge, str)
        and bool(params.code_challenge)
        and params.challenge_method == CHALLENGE_METHOD
        and is_valid_verifier(params.code_verifier)
        and isinstance(created_at, (int, float))
        and not isinstance(created_at, bool)
        and created_at > 0
    )


def _describe_record(raw: str, now: float) -> str:
    try:
        params = PKCEParameters.from_json(raw)
    except ValueError:
        return "<corrupt>"
    return (
        f"provider={params.provider} age={params.age(now):.0f}s "
        f"state={truncate(params.state)} verifier={redact(params.code_verifier)}"
    )
