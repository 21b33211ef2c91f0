"""Logging helpers.

Modules log through ``logging.getLogger(__name__)``; this helper only
attaches a console handler to the package logger for interactive use.
"""

import logging

from rich.logging import RichHandler

PACKAGE_LOGGER = "trialmatch"


def get_logger(
    name: str = PACKAGE_LOGGER,
    enable_console_logging: bool = True,
    level: str | int = logging.INFO,
) -> logging.Logger:
    """Return a logger, attaching a Rich console handler once if requested."""
    logger = logging.getLogger(name)
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(level)

    if enable_console_logging and not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(rich_tracebacks=True, show_path=False, markup=False)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)

    return logger
