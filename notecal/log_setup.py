from __future__ import annotations

import logging

from notecal.models import LoggingConfig

LOGGER_NAME = "notecal"
LOG_FORMAT = "%(asctime)s [notecal] %(levelname)s %(name)s: %(message)s"


def setup_logging(config: LoggingConfig | None = None) -> logging.Logger:
    """Configure the package logger.

    Warnings and errors (failed feeds) are always emitted; ``enabled`` turns
    on the configured level for informational and debug output.
    """
    config = config or LoggingConfig()
    package_logger = logging.getLogger(LOGGER_NAME)

    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger.addHandler(handler)
    package_logger.propagate = False

    if config.enabled:
        package_logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    else:
        package_logger.setLevel(logging.WARNING)
    return package_logger
