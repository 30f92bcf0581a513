"""HTTP surface for the sign-in redirect.

A small Starlette application that starts sign-in, receives the
provider's redirect and reports diagnostics. Every request builds a
fresh orchestrator over shared storage, the same way a callback lands
in a new process after the redirect.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from starlette.applications import Starlette
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from pkce_auth.config import ConfigError, Environment
from pkce_auth.diagnostics import DiagnosticsRecorder
from pkce_auth.errors import CryptoUnavailableError, user_message
from pkce_auth.logging_config import get_logger
from pkce_auth.oauth.flows import create_orchestrator
from pkce_auth.oauth.storage import create_storage

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request

    from pkce_auth.config import Config
    from pkce_auth.oauth.flows import CallbackResult, OAuthFlowOrchestrator
    from pkce_auth.oauth.session import OAuthSession

logger = get_logger(__name__)


def create_callback_app(
    config: Config,
    recorder: DiagnosticsRecorder | None = None,
    orchestrator_factory: Callable[[], OAuthFlowOrchestrator] | None = None,
    on_session: Callable[[OAuthSession], Awaitable[None]] | None = None,
) -> Starlette:
    """Create the callback Starlette application.

    Args:
        config: Application configuration
        recorder: Diagnostics sink shared by every request
        orchestrator_factory: Builds an orchestrator per request;
            defaults to one built from config over shared storage
        on_session: Receives the session after a successful sign-in

    Returns:
        Configured Starlette application

    Raises:
        ConfigError: If no factory is given and sign-in settings are missing
    """
    recorder = recorder or DiagnosticsRecorder()

    if orchestrator_factory is None:
        missing = config.missing_flow_settings()
        if missing:
            msg = f"Missing required settings for sign-in: {', '.join(missing)}"
            raise ConfigError(msg)

        encryption_key = (
            config.storage_encryption_key.get_secret_value()
            if config.storage_encryption_key
            else None
        )
        storage = create_storage(encryption_key, config.storage_path)

        def default_factory() -> OAuthFlowOrchestrator:
            return create_orchestrator(config, recorder=recorder, storage=storage)

        orchestrator_factory = default_factory

    factory = orchestrator_factory

    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse({
            "status": "ok",
            "app_name": config.app_name,
            "environment": config.environment.value,
        })

    async def login(request: Request) -> Response:
        """Start sign-in and redirect to the provider."""
        provider = request.query_params.get("provider")
        async with factory() as orchestrator:
            try:
                auth_url = orchestrator.begin_sign_in(provider)
            except CryptoUnavailableError as e:
                logger.error("Cannot start sign-in: %s", e)
                return JSONResponse(
                    {"error": e.kind.value, "message": user_message(e.kind)},
                    status_code=503,
                )
            except ValueError as e:
                return _invalid_provider(e)

        return RedirectResponse(url=auth_url, status_code=302)

    async def callback(request: Request) -> Response:
        """Handle the provider's redirect."""
        async with factory() as orchestrator:
            result = await orchestrator.handle_callback(dict(request.query_params))

        if result.succeeded and result.session is not None and on_session is not None:
            await on_session(result.session)

        return _callback_response(config, result)

    async def clear(request: Request) -> JSONResponse:
        """Discard pending parameters for a provider."""
        provider = request.query_params.get("provider")
        async with factory() as orchestrator:
            try:
                orchestrator.clear_state(provider)
            except ValueError as e:
                return _invalid_provider(e)
            cleared = provider or orchestrator.default_provider

        return JSONResponse({"status": "cleared", "provider": cleared})

    async def diagnostics(request: Request) -> JSONResponse:
        """Aggregate diagnostics; not served in production."""
        if config.environment == Environment.PROD:
            return JSONResponse({"error": "not_found"}, status_code=404)

        data: dict[str, Any] = {"report": recorder.report()}
        if request.query_params.get("events"):
            data["events"] = [event.to_dict() for event in recorder.events()]
        return JSONResponse(data)

    routes = [
        Route("/health", health_check, methods=["GET"]),
        Route("/auth/login", login, methods=["GET"]),
        Route("/auth/callback", callback, methods=["GET"]),
        Route("/auth/clear", clear, methods=["POST"]),
        Route("/auth/diagnostics", diagnostics, methods=["GET"]),
    ]

    return Starlette(routes=routes)


def _invalid_provider(error: ValueError) -> JSONResponse:
    return JSONResponse(
        {"error": "invalid_provider", "message": str(error)}, status_code=400
    )


def _callback_response(config: Config, result: CallbackResult) -> Response:
    if result.succeeded:
        if config.post_login_redirect:
            return RedirectResponse(url=config.post_login_redirect, status_code=302)
        return JSONResponse(result.to_dict())

    if config.login_error_redirect:
        query = urlencode({
            "error": result.error_kind.value if result.error_kind else "unknown",
            "message": result.message,
            "ref": result.reference_id,
        })
        separator = "&" if "?" in config.login_error_redirect else "?"
        return RedirectResponse(
            url=f"{config.login_error_redirect}{separator}{query}", status_code=302
        )
    return JSONResponse(result.to_dict(), status_code=400)


async def run_callback_server(app: Starlette, host: str, port: int) -> None:
    """Run the callback server using uvicorn.

    Args:
        app: Starlette ASGI application
        host: Host to bind to
        port: Port to bind to
    """
    import uvicorn

    logger.info("Starting callback server on %s:%d", host, port)

    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()
