"""Logging for the PKCE sign-in flow.

Parameter generation, storage fallbacks, state checks and each code
exchange strategy log under the "pkce_auth" logger. Messages carry
provider names, key names, strategy names and reference ids; verifiers,
codes and tokens are redacted before they reach a log call.

Output goes to stderr so the CLI can print authorization URLs and
JSON results on stdout for scripts. Once configured the package logger
stops propagating, so an application embedding the callback server
keeps its own root handlers.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pkce_auth.config import Config

# Package logger name
LOGGER_NAME = "pkce_auth"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_logging_configured = False


def setup_logging(config: Config) -> None:
    """Configure the package logger.

    Idempotent: repeated calls only update the level of the
    existing handler instead of stacking new ones.

    Args:
        config: Configuration carrying the log_level setting
    """
    global _logging_configured

    log_level = getattr(logging, config.log_level.value)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    if _logging_configured:
        for handler in logger.handlers:
            handler.setLevel(log_level)
        return

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)

    # Callers embedding the library keep their root logger untouched
    logger.propagate = False

    _logging_configured = True

    logger.debug("Logging configured with level %s", config.log_level.value)


def get_logger(name: str) -> logging.Logger:
    """Get a logger that lives under the package logger.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Logger instance
    """
    if name.startswith(LOGGER_NAME):
        return logging.getLogger(name)

    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def reset_logging() -> None:
    """Reset logging configuration.

    Used by tests to allow re-initialization.
    """
    global _logging_configured
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
    _logging_configured = False
