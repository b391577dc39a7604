"""Logging configuration for applications embedding the pipeline."""

from __future__ import annotations

import logging

from marketpipe.services.models import LoggingConfig

__all__ = ["LOG_FORMAT", "configure_logging"]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(config: LoggingConfig | None = None) -> logging.Logger:
    """Configure the root logger from ``config``.

    Installs a stream handler via ``basicConfig`` and, when ``log_file`` is
    set, an additional file handler with the same format.

    Returns:
        The root logger.
    """
    config = config or LoggingConfig()
    log_level = getattr(logging, config.level.upper())

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
        ],
    )

    root = logging.getLogger()
    root.setLevel(log_level)

    if config.log_file:
        file_handler = logging.FileHandler(config.log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    return root
