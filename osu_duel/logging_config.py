"""
Logging setup for the duel bot.

``app.py`` calls ``setup_logging()`` once at import; every other module only does
``log = get_logger(__name__)``. ``LOG_LEVEL`` (DEBUG|INFO|WARNING|ERROR|CRITICAL)
picks the level, and DEBUG switches to a verbose line format with the call site.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

VERBOSE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(funcName)s | %(message)s"
CONCISE_FORMAT = "%(asctime)s %(levelname).1s %(name)s: %(message)s"

# Chatty libraries that stay at WARNING unless we are debugging
THIRD_PARTY = ("discord", "aiosqlite", "aiohttp")


def resolve_level(name: Optional[str] = None) -> int:
    """Numeric level for ``name`` (or ``LOG_LEVEL``); unknown names mean INFO."""
    value = logging.getLevelName((name or os.getenv("LOG_LEVEL") or "INFO").upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: Optional[str] = None, verbose: Optional[bool] = None) -> None:
    numeric = resolve_level(level)
    debugging = numeric <= logging.DEBUG
    if verbose is None:
        verbose = debugging

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(logging.Formatter(VERBOSE_FORMAT if verbose else CONCISE_FORMAT, datefmt="%H:%M:%S"))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(numeric)

    for name in THIRD_PARTY:
        logging.getLogger(name).setLevel(logging.INFO if debugging else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
