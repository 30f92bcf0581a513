"""OAuth 2.0 Authorization Code flow with PKCE.

Parameter generation and redundant persistence, state verification,
and code exchange through ordered fallback strategies.
"""

from pkce_auth.oauth.flows import (
    AttemptOutcome,
    CallbackResult,
    ExchangeAttempt,
    FlowState,
    FlowStatus,
    OAuthFlowOrchestrator,
    create_orchestrator,
)
from pkce_auth.oauth.pkce import Lookup, LookupStatus, PKCEParameters, PKCEParameterStore
from pkce_auth.oauth.session import OAuthSession
from pkce_auth.oauth.state import StateValidator
from pkce_auth.oauth.storage import (
    EncryptedFileStorage,
    InMemoryStorage,
    KeyValueStorage,
    StorageError,
    create_storage,
)
from pkce_auth.oauth.strategies import (
    BackendExchangeStrategy,
    ExchangeRequest,
    ExchangeStrategy,
    FallbackVerifierExchangeStrategy,
    ProviderExchangeStrategy,
    default_strategies,
)

__all__ = [
    "AttemptOutcome",
    "BackendExchangeStrategy",
    "CallbackResult",
    "EncryptedFileStorage",
    "ExchangeAttempt",
    "ExchangeRequest",
    "ExchangeStrategy",
    "FallbackVerifierExchangeStrategy",
    "FlowState",
    "FlowStatus",
    "InMemoryStorage",
    "KeyValueStorage",
    "Lookup",
    "LookupStatus",
    "OAuthFlowOrchestrator",
    "OAuthSession",
    "PKCEParameterStore",
    "PKCEParameters",
    "ProviderExchangeStrategy",
    "StateValidator",
    "StorageError",
    "create_orchestrator",
    "create_storage",
    "default_strategies",
]
