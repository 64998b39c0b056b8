"""Logging setup utilities for ollama-bridge.

Configures logging for the whole application from the logging section
of the settings.
"""

from __future__ import annotations

import logging
import sys

from ollama_bridge.config.settings import LoggingConfig

ROOT_LOGGER = "ollama_bridge"


def setup_logging(config: LoggingConfig | None = None) -> logging.Logger:
    """Configure the ``ollama_bridge`` logger.

    Sets the level and format, logs to stderr, and optionally to a file.
    Calling it again replaces the handlers instead of stacking them.

    Args:
        config: Logging configuration. If None, uses defaults
                (INFO level, stderr output).
    """
    if config is None:
        config = LoggingConfig()

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(config.format)

    # Console handler
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler (optional)
    if config.file:
        file_handler = logging.FileHandler(config.file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    root_logger.debug("Logging initialized at %s level", config.level)
    return root_logger
