from __future__ import annotations

import logging
import sys

from eventlens.core.config import Settings, get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_HANDLER_NAME = "eventlens"


def configure_logging(settings: Settings | None = None) -> None:
    # Install a single stream handler so repeated app factories do not duplicate lines.
    resolved = settings or get_settings()
    root = logging.getLogger()
    level = logging.getLevelName(resolved.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root.setLevel(level)
    if any(handler.get_name() == _HANDLER_NAME for handler in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
