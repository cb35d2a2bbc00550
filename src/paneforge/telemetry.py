"""Logging setup for paneforge.

Modules get their logger through ``get_logger(__name__)``; the CLI calls
``configure_logging`` once to route records through rich.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "paneforge"


def get_logger(name: str) -> logging.Logger:
    """Get a module logger.

    Args:
        name: Module name (usually ``__name__``).

    Returns:
        Logger instance.
    """
    return logging.getLogger(name)


def configure_logging(level: str | int = "WARNING", console: Console | None = None) -> logging.Logger:
    """Install a rich handler on the package logger.

    Calling it again replaces the previous handler instead of stacking a second one.

    Args:
        level: Level name or number.
        console: Console to log to. Defaults to stderr.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    return logger
