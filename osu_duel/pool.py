"""
Map pool generation.

The star window comes from both players' skill signals (25th/75th percentile of
their best plays). Maps are drawn by random sampling over pages of the ranked
catalog, so every random choice goes through an injectable ``random.Random``.
"""

from __future__ import annotations

import asyncio
import random
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from .interfaces import AccountLink, MapCatalog
from .logging_config import get_logger
from .models import Beatmap, DRAFTABLE, MapSlot, SkillSignal, Slot, StarRange, TIEBREAK

log = get_logger(__name__)

# Duel window
DEFAULT_RANGE = StarRange(4.5, 6.0, "default range")
PADDING = 0.25
MIN_FLOOR, MIN_CEIL = 2.0, 11.0
MAX_CEIL = 11.5
MIN_WIDTH = 0.2
TB_SHIFT = (0.2, 0.4)

# Catalog sampling
SEARCH_PAGES = 20
SEARCH_TRIES = 80
RETRY_TRIES = 140

# Personal /r window
PERSONAL_DEFAULT = StarRange(4.5, 6.5, "default")
PERSONAL_TRIES = 40
PERSONAL_PAGES = 15

MOD_PREFERENCE = ("HD", "HR", "DT", "NC")
MOD_SIGNAL_MIN = 4
VALID_MODS = {"HD", "HR", "DT", "NC", "EZ", "HT", "FL", "NF", "SD", "PF", "SO"}


def clamp(n: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, n))


def percentile(values: Sequence[float], p: float) -> Optional[float]:
    """Linear-interpolated percentile (``p`` in 0..1); None for no data."""
    if not values:
        return None
    s = sorted(values)
    idx = (len(s) - 1) * p
    lo, hi = int(idx), min(int(idx) + 1, len(s) - 1)
    if lo == hi:
        return s[lo]
    return s[lo] + (s[hi] - s[lo]) * (idx - lo)


def preferred_mods(mod_lists: Iterable[Iterable[str]]) -> list[str]:
    """Main mod setup seen in a player's best scores.

    Only HD/HR/DT/NC count, and only when present in at least
    ``MOD_SIGNAL_MIN`` scores. HD and HR combine when both qualify.
    """
    counts = Counter(m for mods in mod_lists for m in mods)
    ranked = sorted(MOD_PREFERENCE, key=lambda m: counts[m], reverse=True)
    top = ranked[0]
    if counts[top] < MOD_SIGNAL_MIN:
        return []
    if top in ("HD", "HR") and counts["HD"] >= MOD_SIGNAL_MIN and counts["HR"] >= MOD_SIGNAL_MIN:
        return ["HD", "HR"]
    return [top]


def signal_from_scores(
    stars: Sequence[float],
    mod_lists: Iterable[Iterable[str]] = (),
    username: str | None = None,
) -> Optional[SkillSignal]:
    stars = [s for s in stars if isinstance(s, (int, float))]
    if not stars:
        return None
    return SkillSignal(
        p25=percentile(stars, 0.25),
        p75=percentile(stars, 0.75),
        username=username,
        preferred_mods=preferred_mods(mod_lists),
    )


def star_range(a: Optional[SkillSignal], b: Optional[SkillSignal]) -> StarRange:
    """Shared window for two players; the fixed default if either signal is missing."""
    if a is None or b is None:
        return StarRange(DEFAULT_RANGE.min, DEFAULT_RANGE.max, DEFAULT_RANGE.note)
    lo = clamp((a.p25 + b.p25) / 2 - PADDING, MIN_FLOOR, MIN_CEIL)
    hi = clamp((a.p75 + b.p75) / 2 + PADDING, lo + MIN_WIDTH, MAX_CEIL)
    who = f"{a.username or '?'} vs {b.username or '?'}"
    return StarRange(round(lo, 2), round(hi, 2), f"auto from top plays ({who})")


def personal_range(
    signal: Optional[SkillSignal],
    min_override: float | None = None,
    max_override: float | None = None,
) -> StarRange:
    if signal is None:
        lo, hi, note = PERSONAL_DEFAULT.min, PERSONAL_DEFAULT.max, PERSONAL_DEFAULT.note
    else:
        lo = clamp(signal.p25 - PADDING, 1.0, 12.0)
        hi = clamp(signal.p75 + PADDING, lo + MIN_WIDTH, 12.5)
        note = "auto from your top plays"
    if min_override is not None:
        lo = min_override
    if max_override is not None:
        hi = max_override
    lo = clamp(lo, 0.5, 12.0)
    hi = clamp(hi, lo + MIN_WIDTH, 12.5)
    return StarRange(round(lo, 2), round(hi, 2), note)


def normalize_mods(text: str | None) -> list[str]:
    """Parse ``"HDHR"``, ``"hd,dt"`` or ``"NM"`` into a list of known mods."""
    if not text:
        return []
    s = "".join(text.upper().split())
    if s == "NM":
        return []
    tokens = s.split(",") if "," in s else [s[i:i + 2] for i in range(0, len(s), 2)]
    return [m for m in tokens if m in VALID_MODS]


@dataclass
class RandomMap:
    beatmap: Optional[Beatmap]
    range: StarRange
    mods: list[str]


class PoolGenerator:
    def __init__(
        self,
        catalog: MapCatalog,
        rng: random.Random | None = None,
        pages: int = SEARCH_PAGES,
        tries: int = SEARCH_TRIES,
        retry_tries: int = RETRY_TRIES,
    ):
        self.catalog = catalog
        self.rng = rng or random.Random()
        self.pages = pages
        self.tries = tries
        self.retry_tries = retry_tries

    async def search_random(
        self,
        lo: float,
        hi: float,
        tries: int | None = None,
        pages: int | None = None,
    ) -> Optional[Beatmap]:
        """Sample random ranked maps until one falls inside ``[lo, hi]`` stars."""
        pages = pages or self.pages
        for _ in range(tries if tries is not None else self.tries):
            sets = await self.catalog.ranked_page(1 + self.rng.randrange(pages))
            if not sets:
                continue
            diffs = self.rng.choice(sets)
            if not diffs:
                continue
            bm = self.rng.choice(diffs)
            if not isinstance(bm.stars, (int, float)):
                continue
            if lo <= bm.stars <= hi:
                return bm
        return None

    async def window(self, accounts: AccountLink, a: int, b: int) -> StarRange:
        try:
            sig_a, sig_b = await asyncio.gather(accounts.skill_signal(a), accounts.skill_signal(b))
        except Exception:
            log.warning("Skill signal lookup failed for %s/%s; using default range", a, b, exc_info=True)
            sig_a = sig_b = None
        return star_range(sig_a, sig_b)

    def _bounds(self, slot: Slot, window: StarRange) -> tuple[float, float]:
        if slot is TIEBREAK:
            shifted = window.shifted(*TB_SHIFT)
            return shifted.min, shifted.max
        return window.min, window.max

    async def generate(self, window: StarRange) -> list[MapSlot]:
        """Build the 5-slot pool: four draftable slots in ``window``, TB a bit harder.

        Slots that stay empty after the first pass get one more, longer search.
        """
        pool = []
        for slot in (*DRAFTABLE, TIEBREAK):
            lo, hi = self._bounds(slot, window)
            pool.append(MapSlot(slot, await self.search_random(lo, hi)))

        for entry in pool:
            if entry.map is None:
                lo, hi = self._bounds(entry.slot, window)
                entry.map = await self.search_random(lo, hi, tries=self.retry_tries)
                if entry.map is None:
                    log.warning("No map found for %s in %.2f-%.2f", entry.slot.value, lo, hi)

        log.info("Generated pool in %.2f-%.2f★ (%s/5 filled)", window.min, window.max,
                 sum(1 for e in pool if e.map))
        return pool

    async def random_map(
        self,
        signal: Optional[SkillSignal],
        min_override: float | None = None,
        max_override: float | None = None,
        mods_override: str | None = None,
    ) -> RandomMap:
        """One map in the player's personal window, for the ``/r`` command."""
        stars = personal_range(signal, min_override, max_override)
        mods = list(signal.preferred_mods) if signal else []
        if mods_override is not None:
            mods = normalize_mods(mods_override)
        bm = await self.search_random(stars.min, stars.max, tries=PERSONAL_TRIES, pages=PERSONAL_PAGES)
        return RandomMap(bm, stars, mods)
