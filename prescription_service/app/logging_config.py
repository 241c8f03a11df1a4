"""
Logging setup shared by the whole service.

Every module asks for ``logging.getLogger(__name__)``; this module only
attaches a handler to the package root logger. Output is JSON lines by
default (``LOG_AS_JSON``), plain text otherwise.
"""

import logging
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

from .settings import settings

ROOT_LOGGER = "prescription_service"


def setup_logging(level: Optional[str] = None, as_json: Optional[bool] = None) -> logging.Logger:
    level = level or settings.log_level
    as_json = settings.log_as_json if as_json is None else as_json

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.getLevelName(level.upper()))
    if not logger.handlers:
        handler = logging.StreamHandler()
        if as_json:
            handler.setFormatter(
                JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
            )
        else:
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
            )
        logger.addHandler(handler)
    return logger
