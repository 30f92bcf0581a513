"""Command-line interface for the PKCE auth manager.

Each command builds its own orchestrator, so ``begin`` and
``callback`` behave like two separate processes on either side of the
redirect. Use encrypted file storage for them to share parameters.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import typer

from pkce_auth import __version__
from pkce_auth.config import Config, ConfigError, load_config
from pkce_auth.diagnostics import DiagnosticsRecorder
from pkce_auth.errors import CryptoUnavailableError
from pkce_auth.logging_config import get_logger, setup_logging
from pkce_auth.oauth.flows import create_orchestrator

app = typer.Typer(
    name="pkce-auth",
    help="PKCE Auth Manager - OAuth 2.0 Authorization Code + PKCE sign-in",
    add_completion=False,
)

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to configuration file (JSON or YAML)",
)
LOG_LEVEL_OPTION = typer.Option(
    None,
    "--log-level",
    "-l",
    help="Log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
)
PROVIDER_OPTION = typer.Option(
    None,
    "--provider",
    "-p",
    help="Provider name (defaults to the configured default_provider)",
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"pkce-auth version {__version__}")
        typer.echo(f"Python {sys.version}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """PKCE Auth Manager CLI."""


def _load(
    config_path: str | None,
    log_level: str | None,
    **overrides: Any,
) -> Config:
    """Load configuration and set up logging, exiting on config errors."""
    cli_args: dict[str, Any] = {"log_level": log_level, **overrides}
    try:
        config = load_config(path=config_path, cli_args=cli_args)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None

    setup_logging(config)
    return config


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.command()
def begin(
    provider: str | None = PROVIDER_OPTION,
    config_path: str | None = CONFIG_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Start sign-in and print the authorization URL."""
    config = _load(config_path, log_level)

    try:
        orchestrator = create_orchestrator(config)
        url = orchestrator.begin_sign_in(provider)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None
    except (CryptoUnavailableError, ValueError) as e:
        typer.echo(f"Cannot start sign-in: {e}", err=True)
        raise typer.Exit(code=1) from None

    typer.echo(url)


@app.command()
def callback(
    redirect: str = typer.Argument(..., help="Callback URL or its query string"),
    provider: str | None = PROVIDER_OPTION,
    config_path: str | None = CONFIG_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Complete sign-in from the provider's redirect URL."""
    config = _load(config_path, log_level)

    try:
        orchestrator = create_orchestrator(config, recorder=DiagnosticsRecorder())
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None

    async def _run() -> Any:
        async with orchestrator:
            return await orchestrator.handle_callback(redirect, provider=provider)

    result = asyncio.run(_run())
    _echo_json(result.to_dict())
    if not result.succeeded:
        raise typer.Exit(code=1)


@app.command()
def clear(
    provider: str | None = PROVIDER_OPTION,
    config_path: str | None = CONFIG_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Discard pending PKCE parameters."""
    config = _load(config_path, log_level)

    try:
        orchestrator = create_orchestrator(config)
        orchestrator.clear_state(provider)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None
    except ValueError as e:
        typer.echo(f"Invalid provider: {e}", err=True)
        raise typer.Exit(code=1) from None

    typer.echo(f"Cleared pending sign-in for {provider or config.default_provider}")


@app.command()
def inspect(
    provider: str | None = PROVIDER_OPTION,
    config_path: str | None = CONFIG_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Show stored PKCE keys with secrets redacted."""
    config = _load(config_path, log_level)

    try:
        orchestrator = create_orchestrator(config)
        snapshot = orchestrator.store.snapshot(provider)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None
    except ValueError as e:
        typer.echo(f"Invalid provider: {e}", err=True)
        raise typer.Exit(code=1) from None

    _echo_json(snapshot)


@app.command()
def serve(
    config_path: str | None = CONFIG_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
    host: str | None = typer.Option(
        None,
        "--host",
        "-h",
        help="Host to bind to",
    ),
    port: int | None = typer.Option(
        None,
        "--port",
        help="Port to bind to",
    ),
) -> None:
    """Run the callback HTTP server."""
    config = _load(config_path, log_level, host=host, port=port)
    logger = get_logger(__name__)

    from pkce_auth.callback_app import create_callback_app, run_callback_server

    try:
        callback_app = create_callback_app(config)
        logger.info(
            "Starting PKCE Auth Manager (app: %s, env: %s)",
            config.app_name,
            config.environment.value,
        )
        asyncio.run(run_callback_server(callback_app, config.host, config.port))
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        logger.info("Shutting down (keyboard interrupt)")
        raise typer.Exit(code=0) from None


@app.command()
def version() -> None:
    """Print version information."""
    typer.echo(f"pkce-auth version {__version__}")
    typer.echo(f"Python {sys.version}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
