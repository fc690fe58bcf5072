"""Environment configuration (``.env`` is honoured via python-dotenv)."""

from __future__ import annotations

import os

from dotenv import load_dotenv

from .logging_config import get_logger

load_dotenv()
log = get_logger(__name__)


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("Invalid %s value %r, using default %s", name, raw, default)
        return default


def _opt_id(name: str) -> int | None:
    return _int(name, 0) or None


TOKEN = os.getenv("DISCORD_TOKEN")
TEST_MODE = _flag("TEST_MODE")
TEST_GUILD_ID = _opt_id("TEST_GUILD_ID")

DATABASE_PATH = os.getenv(
    "DATABASE_PATH",
    "./test_osu_duel.sqlite" if TEST_MODE else "./osu_duel.sqlite",
)

OSU_CLIENT_ID = os.getenv("OSU_CLIENT_ID", "")
OSU_CLIENT_SECRET = os.getenv("OSU_CLIENT_SECRET", "")

SUPPORT_ROLE_ID = _opt_id("SUPPORT_ROLE_ID")
DUEL_CATEGORY_ID = _opt_id("DUEL_CATEGORY_ID")
DUEL_QUEUE_CHANNEL_ID = _opt_id("DUEL_QUEUE_CHANNEL_ID")
DUEL_CHANNEL_PREFIX = os.getenv("DUEL_CHANNEL_PREFIX", "duel")

DUEL_DELETE_MINUTES = _int("DUEL_DELETE_MINUTES", 5)
if DUEL_DELETE_MINUTES < 0:
    log.warning("DUEL_DELETE_MINUTES must not be negative, using default 5")
    DUEL_DELETE_MINUTES = 5

RATING_DELTA = _int("RATING_DELTA", 25)

# Digit rank roles: ROLE_2D .. ROLE_7D, keyed by digit count of the global rank
DIGIT_ROLES: dict[int, int] = {}
for _digits in range(2, 8):
    _role_id = _opt_id(f"ROLE_{_digits}D")
    if _role_id:
        DIGIT_ROLES[_digits] = _role_id
