"""Logging setup with secret masking.

Library modules log through `logging.getLogger(__name__)`. Output is
discarded unless debug is enabled in the settings.
"""

from __future__ import annotations

import logging
import re

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "pipelink"

# Request signatures and secrets that may end up in URLs or reprs
SECRET_PATTERN = re.compile(r"((?:sign|client_secret|secret)=)[^&\s'\"]+")


def scrub_secrets(text: str) -> str:
    """Replace secret query values and settings with a mask."""
    return SECRET_PATTERN.sub(r"\1****", text)


class MaskingFilter(logging.Filter):
    """Log filter that masks request signatures and client secrets."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = scrub_secrets(record.msg)
        return True


def setup_logging(debug: bool) -> logging.Logger:
    """Configure the package logger.

    Without debug the logger is silenced; with it, records go to stdout
    through rich.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    for flt in list(logger.filters):
        logger.removeFilter(flt)

    if debug:
        handler: logging.Handler = RichHandler(
            console=Console(), show_path=False, rich_tracebacks=True
        )
        handler.addFilter(MaskingFilter())
        logger.setLevel(logging.DEBUG)
    else:
        handler = logging.NullHandler()
        logger.setLevel(logging.CRITICAL + 1)

    logger.addHandler(handler)
    logger.propagate = False
    return logger
