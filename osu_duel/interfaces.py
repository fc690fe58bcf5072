"""
Collaborators the duel core talks to but does not own.

``osu_api`` provides the osu! implementations of ``AccountLink`` and
``MapCatalog``; ``app.py`` provides the Discord ``ChatPlatform``. Tests use
in-memory fakes.
"""

from __future__ import annotations

from typing import Optional, Protocol

from .models import Beatmap, Duel, OsuProfile, RatingRecord, SkillSignal, Slot


class AccountLink(Protocol):
    async def is_linked(self, user_id: int) -> bool: ...

    async def skill_signal(self, user_id: int) -> Optional[SkillSignal]:
        """Percentile profile of recent plays, or None when unavailable."""
        ...

    async def profile(self, user_id: int, top_plays: int = 5) -> OsuProfile:
        """Raises ``NotLinked`` or ``OsuUnavailable``."""
        ...


class MapCatalog(Protocol):
    async def ranked_page(self, page: int) -> list[list[Beatmap]]:
        """One page of ranked beatmap sets; each inner list holds one set's difficulties."""
        ...


class ChatPlatform(Protocol):
    async def create_duel_channel(self, guild_id: int, name: str, a: int, b: int) -> int:
        """Create a channel only the two players (and arbitration staff) can see."""
        ...

    async def send_intro(self, duel: Duel) -> None: ...

    async def send_pool(self, duel: Duel) -> None:
        """Pool state plus the draft controls for the current phase."""
        ...

    async def send_draft_action(self, duel: Duel, user_id: int, action: str, slot: Slot) -> None: ...

    async def announce_map(self, duel: Duel, slot: Slot) -> None: ...

    async def announce_confirmed(self, duel: Duel, slot: Slot, winner_id: int) -> None: ...

    async def announce_dispute(self, duel: Duel, slot: Slot) -> None: ...

    async def announce_resolved(self, duel: Duel, slot: Slot, winner_id: int) -> None: ...

    async def announce_finish(self, duel: Duel, winner: RatingRecord, loser: RatingRecord) -> None: ...

    async def lock_channel(self, duel: Duel) -> None:
        """Make the channel read-only for the players."""
        ...

    async def announce_cleanup(self, channel_id: int, minutes: float) -> None: ...

    async def delete_channel(self, channel_id: int) -> None:
        """Delete a channel; a channel that is already gone is not an error."""
        ...
