"""
DuelService: the entry points the command layer calls.

Each call returns a ``Result``; rejected actions come back as
``Result(ok=False, reason=<code>)`` and never touch the stores. Mutations of a
duel run under that duel's lock and follow load -> validate -> mutate -> save.
Chat messages go out only after the new state is committed, and a failing
message never undoes a commit.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from . import db, ranks, rules
from .logging_config import get_logger
from .matchmaking import MatchMaker
from .mmr import DEFAULT_DELTA
from .models import DraftAction, Duel, OsuProfile, Outcome, Phase, RatingRecord, Side, Slot
from .pool import RandomMap
from .rules import (
    DuelError,
    NoDuel,
    NoRank,
    NoRoleMatch,
    NotPlayer,
    ReportResult,
    ReportStatus,
    WinnerNotPlayer,
)

log = get_logger(__name__)


@dataclass
class Result:
    ok: bool
    reason: Optional[str] = None
    size: Optional[int] = None
    users: list[int] = field(default_factory=list)
    duel: Optional[Duel] = None
    phase: Optional[Phase] = None
    status: Optional[ReportStatus] = None
    slot: Optional[Slot] = None
    finished: bool = False
    record: Optional[RatingRecord] = None
    random_map: Optional[RandomMap] = None
    profile: Optional[OsuProfile] = None
    role_add: Optional[int] = None
    role_remove: list[int] = field(default_factory=list)

    @classmethod
    def fail(cls, err: DuelError | str) -> "Result":
        return cls(ok=False, reason=err if isinstance(err, str) else err.reason)


class DuelService:
    def __init__(
        self,
        matchmaker: MatchMaker,
        delta: int = DEFAULT_DELTA,
        delete_minutes: float = 5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        digit_roles: dict[int, int] | None = None,
    ):
        self.matchmaker = matchmaker
        self.queue = matchmaker.queue
        self.chat = matchmaker.chat
        self.accounts = matchmaker.accounts
        self.pools = matchmaker.pools
        self.delta = delta
        self.delete_minutes = delete_minutes
        self._sleep = sleep
        self.digit_roles = dict(digit_roles or {})
        self._duel_locks: dict[int, asyncio.Lock] = {}
        self._cleanups: set[asyncio.Task] = set()

    def duel_lock(self, duel_id: int) -> asyncio.Lock:
        lock = self._duel_locks.get(duel_id)
        if not lock:
            lock = asyncio.Lock()
            self._duel_locks[duel_id] = lock
        return lock

    def _reject(self, duel_id: int, err: DuelError) -> Result:
        if isinstance(err, NoDuel):
            self._duel_locks.pop(duel_id, None)
        return Result.fail(err)

    async def _notify(self, coro: Awaitable[Any]) -> None:
        try:
            await coro
        except Exception:
            log.debug("Chat notification failed", exc_info=True)

    # --- Queue ---

    async def enqueue(self, user_id: int) -> Result:
        try:
            size = await self.queue.enqueue(user_id)
        except DuelError as e:
            return Result.fail(e)
        log.info("User %s joined the duel queue (size=%s)", user_id, size)
        return Result(True, size=size)

    async def dequeue(self, user_id: int) -> Result:
        try:
            size = await self.queue.dequeue(user_id)
        except DuelError as e:
            return Result.fail(e)
        log.info("User %s left the duel queue (size=%s)", user_id, size)
        return Result(True, size=size)

    async def queue_status(self) -> Result:
        users = await self.queue.status()
        return Result(True, size=len(users), users=users)

    async def create_pairing_if_possible(self, guild_id: int) -> Result:
        """Pair the first two eligible queued players. ``duel`` is None when nobody was paired."""
        try:
            duel = await self.matchmaker.create_pairing_if_possible(guild_id)
        except DuelError as e:
            return Result.fail(e)
        if duel is None:
            return Result(True)
        await self._notify(self.chat.send_intro(duel))
        await self._notify(self.chat.send_pool(duel))
        return Result(True, duel=duel, phase=duel.phase)

    # --- Draft ---

    async def apply_draft_action(self, duel_id: int, player_id: int, action: DraftAction, slot: Slot) -> Result:
        async with self.duel_lock(duel_id):
            try:
                duel = await self._load_for_player(duel_id, player_id)
                phase = rules.draft(duel, duel.side_of(player_id), action, slot)
            except DuelError as e:
                return self._reject(duel_id, e)
            await db.save_duel(duel)
            log.info("Duel %s: %s %s %s -> %s", duel.id, player_id, action.value, slot.value, phase.value)

            await self._notify(self.chat.send_draft_action(duel, player_id, action.value, slot))
            await self._notify(self.chat.send_pool(duel))
            if phase is Phase.PLAYING:
                await self._notify(self.chat.announce_map(duel, rules.expected_slot(duel)))
        return Result(True, duel=duel, phase=phase, slot=slot)

    async def _load_for_player(self, duel_id: int, player_id: int) -> Duel:
        duel = await db.get_duel(duel_id)
        if duel is None:
            raise NoDuel()
        if duel.side_of(player_id) is None:
            raise NotPlayer()
        return duel

    # --- Results ---

    async def apply_report(self, duel_id: int, player_id: int, slot: Slot, outcome: Outcome) -> Result:
        async with self.duel_lock(duel_id):
            try:
                duel = await self._load_for_player(duel_id, player_id)
                res = rules.report(duel, duel.side_of(player_id), slot, outcome)
            except DuelError as e:
                return self._reject(duel_id, e)
            log.info("Duel %s: %s reported %s on %s (%s)",
                     duel.id, player_id, outcome.value, slot.value, res.status.value)
            return await self._settle(duel, res, resolved=False)

    async def arbitrate(self, channel_id: int, winner_id: int) -> Result:
        """Award the active map of the duel in ``channel_id`` to ``winner_id``.

        The caller has already checked that the invoking user may arbitrate.
        """
        found = await db.get_duel_by_channel(channel_id)
        if found is None:
            return Result.fail(NoDuel())

        async with self.duel_lock(found.id):
            try:
                duel = await db.get_duel(found.id)
                if duel is None:
                    raise NoDuel()
                side = duel.side_of(winner_id)
                if side is None:
                    raise WinnerNotPlayer()
                res = rules.resolve(duel, side)
            except DuelError as e:
                return self._reject(found.id, e)
            log.info("Duel %s: %s awarded %s by arbitration", duel.id, res.slot.value, winner_id)
            return await self._settle(duel, res, resolved=True)

    async def _settle(self, duel: Duel, res: ReportResult, resolved: bool) -> Result:
        """Persist a report outcome, then tell the channel about it."""
        result = Result(True, duel=duel, phase=duel.phase, status=res.status, slot=res.slot, finished=res.finished)

        if res.status is ReportStatus.CONFIRMED and res.finished:
            await self._finish(duel, res, resolved)
            return result

        await db.save_duel(duel)
        if res.status is ReportStatus.DISPUTED:
            log.info("Duel %s: conflicting reports on %s, waiting for arbitration", duel.id, res.slot.value)
            await self._notify(self.chat.announce_dispute(duel, res.slot))
        elif res.status is ReportStatus.CONFIRMED:
            log.info("Duel %s: %s confirmed, score %s", duel.id, res.slot.value, duel.score_line)
            await self._announce_result(duel, res, resolved)
            await self._notify(self.chat.announce_map(duel, rules.expected_slot(duel)))
        return result

    async def _announce_result(self, duel: Duel, res: ReportResult, resolved: bool) -> None:
        winner_id = duel.player(res.winner)
        if resolved:
            await self._notify(self.chat.announce_resolved(duel, res.slot, winner_id))
        else:
            await self._notify(self.chat.announce_confirmed(duel, res.slot, winner_id))

    async def _finish(self, duel: Duel, res: ReportResult, resolved: bool) -> None:
        winner: Side = res.winner
        winner_id, loser_id = duel.player(winner), duel.player(winner.other)
        new_w, new_l = await db.finish_duel(duel.id, winner_id, loser_id, self.delta)
        self._duel_locks.pop(duel.id, None)
        log.info("Duel %s finished %s: winner %s (%s), loser %s (%s)",
                 duel.id, duel.score_line, winner_id, new_w.rating, loser_id, new_l.rating)

        await self._announce_result(duel, res, resolved)
        await self._notify(self.chat.announce_finish(duel, new_w, new_l))
        await self._notify(self.chat.lock_channel(duel))
        await self._notify(self.chat.announce_cleanup(duel.channel_id, self.delete_minutes))
        self._schedule_cleanup(duel.channel_id)

    # --- Channel cleanup ---

    def _schedule_cleanup(self, channel_id: int) -> None:
        task = asyncio.create_task(self._cleanup_later(channel_id))
        self._cleanups.add(task)
        task.add_done_callback(self._cleanups.discard)

    async def _cleanup_later(self, channel_id: int) -> None:
        await self._sleep(self.delete_minutes * 60)
        if await db.get_duel_by_channel(channel_id) is not None:
            log.info("Channel %s hosts a live duel again; not deleting it", channel_id)
            return
        try:
            await self.chat.delete_channel(channel_id)
        except Exception:
            log.debug("Deleting channel %s failed", channel_id, exc_info=True)
        else:
            log.info("Deleted finished duel channel %s", channel_id)

    async def wait_for_cleanups(self) -> None:
        if self._cleanups:
            await asyncio.gather(*self._cleanups, return_exceptions=True)

    # --- Player info ---

    async def stats(self, user_id: int) -> Result:
        return Result(True, record=await db.get_rating(user_id))

    async def random_map(
        self,
        user_id: int,
        min_stars: float | None = None,
        max_stars: float | None = None,
        mods: str | None = None,
    ) -> Result:
        try:
            signal = await self.accounts.skill_signal(user_id)
        except Exception:
            log.warning("Skill signal lookup failed for %s; using default range", user_id, exc_info=True)
            signal = None
        picked = await self.pools.random_map(signal, min_stars, max_stars, mods)
        if picked.beatmap is None:
            return Result(False, reason="no_map_found", random_map=picked)
        return Result(True, random_map=picked)

    async def profile(self, user_id: int) -> Result:
        """Linked osu! profile with top plays, plus the player's duel record."""
        try:
            prof = await self.accounts.profile(user_id)
        except DuelError as e:
            return Result.fail(e)
        return Result(True, profile=prof, record=await db.get_rating(user_id))

    async def rank_role(self, user_id: int, held_role_ids: Iterable[int] = ()) -> Result:
        """Work out which digit rank role ``user_id`` should hold.

        The caller applies ``role_add`` / ``role_remove`` to the member.
        """
        try:
            prof = await self.accounts.profile(user_id, top_plays=0)
            if not prof.global_rank:
                raise NoRank()
            if ranks.pick_digit_role(prof.global_rank, self.digit_roles) is None:
                raise NoRoleMatch()
        except DuelError as e:
            return Result.fail(e)
        add, remove = ranks.role_changes(prof.global_rank, self.digit_roles, held_role_ids)
        log.info("Rank role for %s: rank #%s add=%s remove=%s", user_id, prof.global_rank, add, remove)
        return Result(True, profile=prof, role_add=add, role_remove=remove)
