"""osu! duel core package.

Exports commonly used modules for convenience.
"""

from . import db as db
from . import mmr as mmr
from . import rules as rules
from . import logging_config as logging_config
from .models import Duel, Phase, RatingRecord, Side, Slot
from .service import DuelService, Result

__all__ = [
    "db",
    "mmr",
    "rules",
    "logging_config",
    "Duel",
    "Phase",
    "RatingRecord",
    "Side",
    "Slot",
    "DuelService",
    "Result",
]
