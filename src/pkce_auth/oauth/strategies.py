"""Authorization code exchange strategies.

Each strategy redeems an authorization code for a session through one
endpoint. The orchestrator tries them strictly in order; a code is
single-use, so two strategies never run at the same time.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from pkce_auth.errors import (
    ErrorKind,
    ExchangeError,
    NetworkError,
    ProviderError,
    UnexpectedResponseError,
    is_safe_provider_message,
)
from pkce_auth.logging_config import get_logger
from pkce_auth.oauth.session import OAuthSession

if TYPE_CHECKING:
    from pkce_auth.config import Config
    from pkce_auth.oauth.pkce import PKCEParameterStore

logger = get_logger(__name__)

DEFAULT_EXCHANGE_TIMEOUT = 10.0

# OAuth error codes that mean retrying with another endpoint cannot help
TERMINAL_OAUTH_ERRORS = frozenset({
    "invalid_grant",
    "access_denied",
    "unauthorized_client",
    "consent_required",
    "login_required",
    "interaction_required",
})

_CODE_USED_RE = re.compile(r"already\s+(?:been\s+)?(?:used|redeemed|exchanged)", re.IGNORECASE)

MAX_ERROR_BODY_LENGTH = 500


@dataclass(frozen=True)
class ExchangeRequest:
    """Inputs for one code exchange."""

    code: str = field(repr=False)
    code_verifier: str = field(repr=False)
    provider: str
    redirect_uri: str | None = None


def _parse_body(response: httpx.Response) -> dict[str, Any] | str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:MAX_ERROR_BODY_LENGTH]
    return body if isinstance(body, dict) else str(body)[:MAX_ERROR_BODY_LENGTH]


def _oauth_error(body: dict[str, Any] | str | None) -> tuple[str | None, str | None]:
    """Pull the error code and description out of an error body."""
    if not isinstance(body, dict):
        return None, body if isinstance(body, str) and body else None

    error = body.get("error")
    if not isinstance(error, str):
        error = body.get("error_code") if isinstance(body.get("error_code"), str) else None

    description = None
    for key in ("error_description", "msg", "message"):
        value = body.get(key)
        if isinstance(value, str) and value:
            description = value
            break
    return error, description


def classify_error_response(
    status_code: int,
    body: dict[str, Any] | str | None = None,
) -> ExchangeError:
    """Map a failed token endpoint response to an exchange error.

    Args:
        status_code: HTTP status code
        body: Parsed JSON body, or raw text

    Returns:
        NetworkError for 408, 429 and 5xx; ProviderError for terminal
        OAuth rejections; UnexpectedResponseError otherwise
    """
    error_code, description = _oauth_error(body)

    if status_code in (408, 429) or status_code >= 500:
        return NetworkError(
            f"Token endpoint unavailable ({status_code})",
            status_code=status_code,
            response_body=body,
        )

    code_used = any(
        text and _CODE_USED_RE.search(text) for text in (error_code, description)
    )
    if 400 <= status_code < 500 and (error_code in TERMINAL_OAUTH_ERRORS or code_used):
        safe = is_safe_provider_message(error_code, description)
        return ProviderError(
            f"Authorization code rejected: {error_code or 'code already used'}",
            status_code=status_code,
            response_body=body,
            provider_message=description if safe else None,
        )

    suffix = f" ({error_code})" if error_code else ""
    return UnexpectedResponseError(
        f"Token endpoint returned {status_code}{suffix}",
        status_code=status_code,
        response_body=body,
    )


async def post_for_json(
    client: httpx.AsyncClient,
    url: str,
    **kwargs: Any,
) -> dict[str, Any]:
    """POST to a token endpoint and return the JSON object it answers with.

    Raises:
        NetworkError: On transport failure or a transient status
        ProviderError: On a terminal OAuth rejection
        UnexpectedResponseError: On any other failure or a malformed body
    """
    try:
        response = await client.post(url, **kwargs)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        error = classify_error_response(e.response.status_code, _parse_body(e.response))
        logger.warning("Token request to %s failed: %s", url, error)
        raise error from e
    except httpx.TimeoutException as e:
        logger.warning("Token request to %s timed out", url)
        raise NetworkError("Token request timed out") from e
    except httpx.HTTPError as e:
        logger.warning("Token request to %s failed: %s", url, type(e).__name__)
        raise NetworkError(f"Token request failed: {type(e).__name__}") from e

    try:
        data = response.json()
    except ValueError as e:
        raise UnexpectedResponseError(
            "Token endpoint returned a non-JSON body", status_code=response.status_code
        ) from e

    if not isinstance(data, dict):
        raise UnexpectedResponseError(
            "Token endpoint returned a non-object body", status_code=response.status_code
        )
    return data


class ExchangeStrategy(ABC):
    """One way of redeeming an authorization code.

    Implementations raise ProviderError (stop trying), NetworkError or
    UnexpectedResponseError (try the next strategy).
    """

    name = "strategy"

    def __init__(self, timeout: float = DEFAULT_EXCHANGE_TIMEOUT) -> None:
        self.timeout = timeout

    @abstractmethod
    async def exchange(
        self,
        client: httpx.AsyncClient,
        request: ExchangeRequest,
    ) -> OAuthSession:
        """Redeem the code and return a session."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, timeout={self.timeout})"


class BackendExchangeStrategy(ExchangeStrategy):
    """Exchange through the identity backend's PKCE token endpoint."""

    name = "backend"

    def __init__(
        self,
        base_url: str,
        token_path: str = "/auth/v1/token?grant_type=pkce",
        api_key: str | None = None,
        timeout: float = DEFAULT_EXCHANGE_TIMEOUT,
    ) -> None:
        super().__init__(timeout)
        self.token_url = f"{base_url.rstrip('/')}/{token_path.lstrip('/')}"
        self._api_key = api_key

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
        return headers

    async def exchange(
        self,
        client: httpx.AsyncClient,
        request: ExchangeRequest,
    ) -> OAuthSession:
        return await self._exchange_with(client, request.code, request.code_verifier)

    async def _exchange_with(
        self,
        client: httpx.AsyncClient,
        code: str,
        code_verifier: str,
    ) -> OAuthSession:
        logger.debug("Exchanging authorization code via %s", self.name)
        data = await post_for_json(
            client,
            self.token_url,
            json={"authorization_code": code, "code_verifier": code_verifier},
            headers=self._headers(),
        )

        try:
            return OAuthSession.from_backend_response(data, strategy=self.name)
        except (ValueError, TypeError, OverflowError) as e:
            raise UnexpectedResponseError(f"Malformed backend session: {e}") from e


class ProviderExchangeStrategy(ExchangeStrategy):
    """Exchange directly with the upstream provider's token endpoint."""

    name = "provider"

    def __init__(
        self,
        token_url: str,
        client_id: str,
        redirect_uri: str,
        client_secret: str | None = None,
        timeout: float = DEFAULT_EXCHANGE_TIMEOUT,
    ) -> None:
        super().__init__(timeout)
        self.token_url = token_url
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self._client_secret = client_secret

    async def exchange(
        self,
        client: httpx.AsyncClient,
        request: ExchangeRequest,
    ) -> OAuthSession:
        data = {
            "grant_type": "authorization_code",
            "code": request.code,
            "code_verifier": request.code_verifier,
            "client_id": self.client_id,
            "redirect_uri": request.redirect_uri or self.redirect_uri,
        }

        # Include client secret if configured
        if self._client_secret:
            data["client_secret"] = self._client_secret

        logger.debug("Exchanging authorization code via %s", self.name)
        token_data = await post_for_json(
            client,
            self.token_url,
            data=data,
            headers={"Accept": "application/json"},
        )

        try:
            return OAuthSession.from_provider_response(token_data, strategy=self.name)
        except (ValueError, TypeError, OverflowError) as e:
            raise UnexpectedResponseError(f"Malformed token response: {e}") from e


class FallbackVerifierExchangeStrategy(BackendExchangeStrategy):
    """Retry the backend with the verifier read from the decomposed key."""

    name = "backend_fallback_verifier"

    def __init__(
        self,
        store: PKCEParameterStore,
        base_url: str,
        token_path: str = "/auth/v1/token?grant_type=pkce",
        api_key: str | None = None,
        timeout: float = DEFAULT_EXCHANGE_TIMEOUT,
    ) -> None:
        super().__init__(base_url, token_path, api_key, timeout)
        self._store = store

    async def exchange(
        self,
        client: httpx.AsyncClient,
        request: ExchangeRequest,
    ) -> OAuthSession:
        verifier = self._store.read_decomposed_verifier()
        if not verifier:
            raise UnexpectedResponseError(
                "No decomposed verifier stored", kind=ErrorKind.VERIFIER_MISSING
            )
        if verifier != request.code_verifier:
            logger.info("Decomposed verifier differs from the stored record; trying it")
        return await self._exchange_with(client, request.code, verifier)


def default_strategies(
    config: Config,
    store: PKCEParameterStore,
) -> list[ExchangeStrategy]:
    """Build the ordered strategy list from configuration.

    Order: backend, provider direct, backend with the decomposed
    verifier. Backend strategies are left out when no backend URL is
    configured.
    """
    timeout = config.exchange_timeout_seconds
    strategies: list[ExchangeStrategy] = []

    api_key = config.backend_api_key.get_secret_value() if config.backend_api_key else None
    if config.backend_base_url:
        strategies.append(
            BackendExchangeStrategy(
                config.backend_base_url,
                config.backend_token_path,
                api_key=api_key,
                timeout=timeout,
            )
        )

    if config.oauth_client_id and config.oauth_redirect_uri:
        client_secret = (
            config.oauth_client_secret.get_secret_value()
            if config.oauth_client_secret
            else None
        )
        strategies.append(
            ProviderExchangeStrategy(
                config.oauth_token_url,
                config.oauth_client_id,
                config.oauth_redirect_uri,
                client_secret=client_secret,
                timeout=timeout,
            )
        )

    if config.backend_base_url:
        strategies.append(
            FallbackVerifierExchangeStrategy(
                store,
                config.backend_base_url,
                config.backend_token_path,
                api_key=api_key,
                timeout=timeout,
            )
        )

    logger.debug("Exchange strategies: %s", ", ".join(s.name for s in strategies))
    return strategies
