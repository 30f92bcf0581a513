"""PKCE Auth Manager.

Client-side OAuth 2.0 Authorization Code + PKCE sign-in that survives
the authorization redirect, with fallback code exchange strategies.
"""

__version__ = "0.1.0"

from pkce_auth.config import Config, ConfigError, load_config
from pkce_auth.diagnostics import DiagnosticsRecorder
from pkce_auth.errors import ErrorKind, PKCEAuthError
from pkce_auth.oauth import CallbackResult, OAuthFlowOrchestrator, create_orchestrator

__all__ = [
    "CallbackResult",
    "Config",
    "ConfigError",
    "DiagnosticsRecorder",
    "ErrorKind",
    "OAuthFlowOrchestrator",
    "PKCEAuthError",
    "__version__",
    "create_orchestrator",
    "load_config",
]
