from __future__ import annotations

import logging
import sys
from pythonjsonlogger import jsonlogger

# Level names accepted on the command line in addition to the stdlib ones
_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


def configure_logging(level: str = "INFO") -> None:
    name = level.upper()
    root = logging.getLogger()
    root.setLevel(_LEVEL_ALIASES.get(name, name))

    handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)

    # Avoid duplicate handlers when called twice
    root.handlers = [handler]
