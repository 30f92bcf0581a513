"""OAuth 2.0 Authorization Code flow with PKCE.

The orchestrator builds the authorization redirect and, on callback
re-entry, exchanges the code through ordered fallback strategies. The
two halves may run in different processes: the only thing they share
is the persisted parameter storage.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from pkce_auth.config import ConfigError
from pkce_auth.errors import (
    ErrorKind,
    ExchangeError,
    NetworkError,
    ProviderError,
    UnexpectedResponseError,
    is_safe_provider_message,
    user_message,
)
from pkce_auth.logging_config import get_logger
from pkce_auth.oauth.pkce import CHALLENGE_METHOD, LookupStatus, PKCEParameterStore
from pkce_auth.oauth.state import StateValidator
from pkce_auth.oauth.storage import create_storage
from pkce_auth.oauth.strategies import ExchangeRequest, ExchangeStrategy, default_strategies
from pkce_auth.security import generate_reference_id

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from pkce_auth.config import Config
    from pkce_auth.diagnostics import DiagnosticsRecorder
    from pkce_auth.oauth.session import OAuthSession
    from pkce_auth.oauth.storage import KeyValueStorage

logger = get_logger(__name__)

# Default HTTP timeout for the owned client; strategies have their own
DEFAULT_TIMEOUT = 30.0

MAX_ATTEMPT_MESSAGE_LENGTH = 200


class FlowState(str, Enum):
    """Orchestrator lifecycle."""

    IDLE = "idle"
    PARAMS_GENERATED = "params_generated"
    CALLBACK_RECEIVED = "callback_received"
    EXCHANGING = "exchanging"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FlowStatus(str, Enum):
    """Terminal outcome of a callback."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AttemptOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ExchangeAttempt:
    """One try of one exchange strategy."""

    strategy: str
    outcome: AttemptOutcome
    duration_ms: float
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "outcome": self.outcome.value,
            "duration_ms": round(self.duration_ms, 3),
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class CallbackResult:
    """Terminal result of handle_callback.

    Attributes:
        status: SUCCEEDED or FAILED
        provider: Provider the callback was resolved to
        reference_id: Correlates the diagnostics events of this callback
        message: Text suitable for the signing-in user
        session: The new session on success
        error_kind: Failure category on failure
        attempts: Every exchange attempt, in order
    """

    status: FlowStatus
    provider: str | None
    reference_id: str
    message: str
    session: OAuthSession | None = None
    error_kind: ErrorKind | None = None
    attempts: tuple[ExchangeAttempt, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == FlowStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe view without tokens."""
        return {
            "status": self.status.value,
            "provider": self.provider,
            "reference_id": self.reference_id,
            "message": self.message,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "session": self.session.to_dict() if self.session else None,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


def parse_callback_params(query_params: Mapping[str, Any] | str) -> dict[str, str]:
    """Normalize callback input to a flat str -> str mapping.

    Accepts a mapping (multi-valued entries keep their first value), a
    raw query string, or a full callback URL.
    """
    if isinstance(query_params, str):
        text = query_params.strip()
        if "://" in text or text.startswith("/"):
            text = urlsplit(text).query
        parsed = parse_qs(text.lstrip("?"), keep_blank_values=True)
        return {key: values[0] for key, values in parsed.items() if values}

    result: dict[str, str] = {}
    for key, value in query_params.items():
        if isinstance(value, (list, tuple)):
            if not value:
                continue
            value = value[0]
        if value is not None:
            result[str(key)] = str(value)
    return result


class OAuthFlowOrchestrator:
    """Drives one sign-in: redirect out, callback in, code exchange.

    A freshly constructed orchestrator can handle a callback whose
    sign-in was started by another instance, provided both use the
    same persisted storage.
    """

    def __init__(
        self,
        store: PKCEParameterStore,
        strategies: Sequence[ExchangeStrategy],
        *,
        client_id: str,
        redirect_uri: str,
        authorization_url: str,
        scope: str,
        extra_params: Mapping[str, str] | None = None,
        default_provider: str = "google",
        recorder: DiagnosticsRecorder | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: PKCE parameter store
            strategies: Exchange strategies in the order they are tried
            client_id: OAuth client identifier
            redirect_uri: Registered redirect/callback URI
            authorization_url: Provider authorization endpoint
            scope: Space-separated list of scopes
            extra_params: Additional authorization URL parameters
            default_provider: Provider used when none is given
            recorder: Diagnostics sink
            http_client: Optional custom HTTP client
        """
        self._store = store
        self._strategies = list(strategies)
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.authorization_url = authorization_url
        self.scope = scope
        self.extra_params = dict(extra_params or {})
        self.default_provider = default_provider
        self._recorder = recorder
        self._http_client = http_client
        self._owns_client = http_client is None
        self.state = FlowState.IDLE

    @property
    def store(self) -> PKCEParameterStore:
        return self._store

    @property
    def strategies(self) -> list[ExchangeStrategy]:
        return list(self._strategies)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> OAuthFlowOrchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def begin_sign_in(self, provider: str | None = None) -> str:
        """Generate and persist PKCE parameters and build the authorization URL.

        Args:
            provider: Provider name; the configured default when None

        Returns:
            URL to send the user to

        Raises:
            CryptoUnavailableError: If no secure random source exists
            ValueError: If the provider name is not usable
        """
        provider = provider or self.default_provider
        params = self._store.generate(provider)

        query = {
            **self.extra_params,
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": params.state,
            "code_challenge": params.code_challenge,
            "code_challenge_method": CHALLENGE_METHOD,
        }

        separator = "&" if "?" in self.authorization_url else "?"
        url = f"{self.authorization_url}{separator}{urlencode(query)}"

        self.state = FlowState.PARAMS_GENERATED
        self._record("begin", True, provider=provider)
        logger.info("Started sign-in for %s (client %s)", provider, self.client_id)
        return url

    async def handle_callback(
        self,
        query_params: Mapping[str, Any] | str,
        provider: str | None = None,
    ) -> CallbackResult:
        """Complete a sign-in from the provider's redirect.

        Never raises: every outcome, including unexpected internal
        failures, is reported as a CallbackResult.

        Args:
            query_params: Callback query as a mapping, query string or URL
            provider: Provider name; otherwise taken from the "provider"
                query parameter, then from the pending parameters that carry
                the callback state, then the configured default

        Returns:
            Terminal result with the session or the failure kind
        """
        reference_id = generate_reference_id()
        self.state = FlowState.CALLBACK_RECEIVED
        resolved_provider = provider

        try:
            params = parse_callback_params(query_params)
            resolved_provider = (
                provider
                or params.get("provider")
                or self._store.provider_for_state(params.get("state"))
                or self.default_provider
            )
            return await self._handle_callback(params, resolved_provider, reference_id)
        except Exception as e:
            logger.exception("Unexpected failure handling callback (ref %s)", reference_id)
            self._record(
                "callback",
                False,
                provider=resolved_provider,
                error_kind=ErrorKind.UNEXPECTED_RESPONSE,
                details={"error": type(e).__name__},
                reference_id=reference_id,
            )
            return self._failed(resolved_provider, ErrorKind.UNEXPECTED_RESPONSE, reference_id)

    async def _handle_callback(
        self,
        params: dict[str, str],
        provider: str,
        reference_id: str,
    ) -> CallbackResult:
        try:
            self._store.provider_key(provider)
        except ValueError as e:
            logger.warning("Callback names an unusable provider: %s", e)
            return self._callback_failed(provider, ErrorKind.INVALID_CALLBACK, reference_id)

        error = params.get("error")
        if error:
            description = params.get("error_description")
            safe_message = description if is_safe_provider_message(error, description) else None
            logger.warning("Provider %s returned error %s on callback", provider, error)
            # Stored parameters are kept: an error redirect is trivially forged
            return self._callback_failed(
                provider,
                ErrorKind.PROVIDER_ERROR,
                reference_id,
                provider_message=safe_message,
                details={"error": error[:64]},
            )

        code = params.get("code")
        if not code:
            logger.warning("Callback for %s carried no authorization code", provider)
            return self._callback_failed(provider, ErrorKind.INVALID_CALLBACK, reference_id)

        lookup = self._store.lookup(provider)
        if lookup.status == LookupStatus.EXPIRED:
            return self._callback_failed(provider, ErrorKind.VERIFIER_EXPIRED, reference_id)
        if lookup.params is None:
            return self._callback_failed(provider, ErrorKind.VERIFIER_MISSING, reference_id)
        stored = lookup.params

        if not self._store.state_validator.verify(params.get("state"), stored.state):
            self._store.invalidate(provider)
            return self._callback_failed(provider, ErrorKind.STATE_MISMATCH, reference_id)

        request = ExchangeRequest(
            code=code,
            code_verifier=stored.code_verifier,
            provider=provider,
            redirect_uri=self.redirect_uri,
        )

        self.state = FlowState.EXCHANGING
        try:
            session, attempts, last_error = await self._exchange(request, reference_id)
        finally:
            # The code is single-use; these parameters can never succeed again
            self._store.invalidate(provider)

        if session is not None:
            self.state = FlowState.SUCCEEDED
            self._record(
                "callback",
                True,
                provider=provider,
                details={"strategy": session.strategy, "attempts": len(attempts)},
                reference_id=reference_id,
            )
            logger.info(
                "Sign-in for %s succeeded via %s (ref %s)",
                provider,
                session.strategy,
                reference_id,
            )
            return CallbackResult(
                status=FlowStatus.SUCCEEDED,
                provider=provider,
                reference_id=reference_id,
                message=user_message(None),
                session=session,
                attempts=tuple(attempts),
            )

        if isinstance(last_error, ProviderError):
            return self._callback_failed(
                provider,
                ErrorKind.PROVIDER_ERROR,
                reference_id,
                provider_message=last_error.provider_message,
                attempts=attempts,
            )
        return self._callback_failed(
            provider, ErrorKind.EXCHANGE_EXHAUSTED, reference_id, attempts=attempts
        )

    async def _exchange(
        self,
        request: ExchangeRequest,
        reference_id: str,
    ) -> tuple[OAuthSession | None, list[ExchangeAttempt], ExchangeError | None]:
        """Try each strategy in turn until one succeeds or one is terminal."""
        client = await self._get_client()
        attempts: list[ExchangeAttempt] = []
        last_error: ExchangeError | None = None

        for strategy in self._strategies:
            start = time.perf_counter()
            try:
                session = await asyncio.wait_for(
                    strategy.exchange(client, request), timeout=strategy.timeout
                )
            except TimeoutError:
                error: ExchangeError = NetworkError(
                    f"{strategy.name} timed out after {strategy.timeout}s"
                )
            except ExchangeError as e:
                error = e
            except Exception as e:
                logger.exception("Strategy %s failed unexpectedly", strategy.name)
                error = UnexpectedResponseError(
                    f"{strategy.name} failed unexpectedly: {type(e).__name__}"
                )
            else:
                duration_ms = (time.perf_counter() - start) * 1000
                attempts.append(
                    ExchangeAttempt(strategy.name, AttemptOutcome.SUCCEEDED, duration_ms)
                )
                self._record(
                    "exchange",
                    True,
                    provider=request.provider,
                    duration_ms=duration_ms,
                    details={"strategy": strategy.name},
                    reference_id=reference_id,
                )
                return session, attempts, None

            duration_ms = (time.perf_counter() - start) * 1000
            attempts.append(
                ExchangeAttempt(
                    strategy.name,
                    AttemptOutcome.FAILED,
                    duration_ms,
                    error_kind=error.kind,
                    error_message=error.message[:MAX_ATTEMPT_MESSAGE_LENGTH],
                )
            )
            self._record(
                "exchange",
                False,
                provider=request.provider,
                duration_ms=duration_ms,
                error_kind=error.kind,
                details={"strategy": strategy.name, "status_code": error.status_code},
                reference_id=reference_id,
            )
            last_error = error

            if not error.retryable:
                logger.warning(
                    "Strategy %s got a terminal rejection; not trying further strategies",
                    strategy.name,
                )
                break
            logger.info("Strategy %s failed (%s); trying next", strategy.name, error.kind.value)

        return None, attempts, last_error

    def clear_state(self, provider: str | None = None) -> None:
        """Discard pending PKCE parameters for a provider."""
        self._store.invalidate(provider or self.default_provider)
        self.state = FlowState.IDLE

    def _callback_failed(
        self,
        provider: str | None,
        kind: ErrorKind,
        reference_id: str,
        *,
        provider_message: str | None = None,
        attempts: list[ExchangeAttempt] | None = None,
        details: dict[str, Any] | None = None,
    ) -> CallbackResult:
        self._record(
            "callback",
            False,
            provider=provider,
            error_kind=kind,
            details={"attempts": len(attempts or []), **(details or {})},
            reference_id=reference_id,
        )
        logger.warning(
            "Sign-in for %s failed: %s (ref %s)", provider, kind.value, reference_id
        )
        return self._failed(provider, kind, reference_id, provider_message, attempts)

    def _failed(
        self,
        provider: str | None,
        kind: ErrorKind,
        reference_id: str,
        provider_message: str | None = None,
        attempts: list[ExchangeAttempt] | None = None,
    ) -> CallbackResult:
        self.state = FlowState.FAILED
        return CallbackResult(
            status=FlowStatus.FAILED,
            provider=provider,
            reference_id=reference_id,
            message=user_message(kind, provider_message, reference_id),
            error_kind=kind,
            attempts=tuple(attempts or ()),
        )

    def _record(self, phase: str, success: bool, **kwargs: Any) -> None:
        if self._recorder is not None:
            self._recorder.append(phase, success, **kwargs)


def create_orchestrator(
    config: Config,
    recorder: DiagnosticsRecorder | None = None,
    storage: KeyValueStorage | None = None,
    http_client: httpx.AsyncClient | None = None,
    clock: Callable[[], float] | None = None,
) -> OAuthFlowOrchestrator:
    """Build an orchestrator and its collaborators from configuration.

    Args:
        config: Application configuration
        recorder: Diagnostics sink
        storage: Storage override; built from config when None
        http_client: Optional custom HTTP client
        clock: Time source for TTL checks

    Returns:
        Configured OAuthFlowOrchestrator

    Raises:
        ConfigError: If client id or redirect URI is missing
    """
    client_id = config.oauth_client_id
    redirect_uri = config.oauth_redirect_uri
    if not client_id or not redirect_uri:
        missing = config.missing_flow_settings()
        msg = f"Missing required settings for sign-in: {', '.join(missing)}"
        raise ConfigError(msg)

    if storage is None:
        encryption_key = (
            config.storage_encryption_key.get_secret_value()
            if config.storage_encryption_key
            else None
        )
        storage = create_storage(encryption_key, config.storage_path)

    store = PKCEParameterStore(
        storage,
        ttl_seconds=config.pkce_ttl_seconds,
        ttl_overrides=config.pkce_ttl_overrides,
        clock=clock or time.time,
        state_validator=StateValidator(
            allow_missing_state=config.allow_missing_state,
            allow_insecure_random=config.allow_insecure_random,
        ),
        recorder=recorder,
        allow_insecure_random=config.allow_insecure_random,
    )

    return OAuthFlowOrchestrator(
        store,
        default_strategies(config, store),
        client_id=client_id,
        redirect_uri=redirect_uri,
        authorization_url=config.oauth_authorization_url,
        scope=config.oauth_scope,
        extra_params=config.authorization_extra_params,
        default_provider=config.default_provider,
        recorder=recorder,
        http_client=http_client,
    )
