"""Logging setup shared by CLI commands."""

import logging
from typing import Optional

from coach_stream.core.config import settings

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"


def configure_logging(level: Optional[str] = None) -> None:
    """Log to stderr; quiet unless asked, so terminal output stays readable."""
    name = (level or ("DEBUG" if settings.debug else "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.WARNING),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )
