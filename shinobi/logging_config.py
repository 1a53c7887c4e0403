"""
Logging setup shared by every module.

Library code only asks for named loggers; entry points call
configure_logging() once.
"""
from __future__ import annotations

import logging
import sys
from typing import Optional

ROOT_LOGGER = "shinobi"
LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

_root = logging.getLogger(ROOT_LOGGER)
_root.addHandler(logging.NullHandler())


def get_logger(name: str) -> logging.Logger:
    """Return a logger nested under the package root logger."""
    if name.startswith(ROOT_LOGGER + ".") or name == ROOT_LOGGER:
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def configure_logging(level: str = "INFO", stream: Optional[object] = None) -> logging.Logger:
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    for existing in list(_root.handlers):
        if not isinstance(existing, logging.NullHandler):
            _root.removeHandler(existing)
    _root.addHandler(handler)
    _root.setLevel(level.upper())
    return _root
