"""
Matchmaking queue and duel creation.

The queue lives in the ``duel_queue`` table; ``MatchQueue`` serialises access
to it with one lock held only for the short read-modify-write of each call.
Pool generation and channel creation happen after the pair has been taken off
the queue, so slow catalog calls never block ``/duel`` or ``/duelleave``; a
pairing that fails on the way puts the pair back where it was.
"""

from __future__ import annotations

import asyncio
import random
import secrets
import string
from typing import Awaitable, Callable, Optional

from . import db
from .interfaces import AccountLink, ChatPlatform
from .logging_config import get_logger
from .models import Duel
from .pool import PoolGenerator
from .rules import AlreadyQueued, NotQueued, PairingFailed

log = get_logger(__name__)

PASSWORD_LENGTH = 10
_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def room_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


class MatchQueue:
    def __init__(self):
        self._lock = asyncio.Lock()

    async def enqueue(self, user_id: int) -> int:
        async with self._lock:
            if not await db.queue_add(user_id):
                raise AlreadyQueued()
            return await db.queue_size()

    async def dequeue(self, user_id: int) -> int:
        async with self._lock:
            if not await db.queue_remove(user_id):
                raise NotQueued()
            return await db.queue_size()

    async def status(self) -> list[int]:
        return await db.queue_list()

    async def take_pair(self, is_linked: Callable[[int], Awaitable[bool]]) -> Optional[tuple[int, int]]:
        """Pop the first two eligible players.

        Every entry the scan reaches leaves the queue: unlinked players are
        dropped, and a single eligible player without a partner goes too.
        """
        async with self._lock:
            queued = await db.queue_list()
            if len(queued) < 2:
                return None

            skipped, pair = [], []
            for user_id in queued:
                if await is_linked(user_id):
                    pair.append(user_id)
                    if len(pair) == 2:
                        break
                else:
                    skipped.append(user_id)
            await db.queue_remove(*skipped, *pair)

        if skipped:
            log.info("Dropped unlinked players from queue: %s", skipped)
        if len(pair) < 2:
            if pair:
                log.info("No partner for %s; removed from queue", pair[0])
            return None
        return pair[0], pair[1]

    async def requeue_front(self, *user_ids: int) -> None:
        async with self._lock:
            await db.queue_push_front(*user_ids)


class MatchMaker:
    """Turns a queued pair into a live duel with its own channel and pool."""

    def __init__(
        self,
        queue: MatchQueue,
        accounts: AccountLink,
        pools: PoolGenerator,
        chat: ChatPlatform,
        rng: random.Random | None = None,
        channel_prefix: str = "duel",
    ):
        self.queue = queue
        self.accounts = accounts
        self.pools = pools
        self.chat = chat
        self.rng = rng or random.Random()
        self.channel_prefix = channel_prefix

    async def create_pairing_if_possible(self, guild_id: int) -> Optional[Duel]:
        """Build a duel for the next eligible pair, or return None when there is none.

        If anything after the pop fails, the pair goes back to the head of the
        queue, a half-made channel is removed and ``PairingFailed`` is raised.
        """
        pair = await self.queue.take_pair(self.accounts.is_linked)
        if pair is None:
            return None
        a, b = pair

        channel_id = None
        try:
            window = await self.pools.window(self.accounts, a, b)
            pool = await self.pools.generate(window)

            duel_id = await db.next_duel_id()
            room_name = f"{self.channel_prefix}-{duel_id}"
            channel_id = await self.chat.create_duel_channel(guild_id, room_name, a, b)

            duel = Duel(
                id=duel_id,
                channel_id=channel_id,
                guild_id=guild_id,
                room_name=room_name,
                password=room_password(),
                a=a,
                b=b,
                starter_id=self.rng.choice((a, b)),
                pool=pool,
                star_range=window,
            )
            await db.save_duel(duel)
        except Exception as e:
            log.warning("Pairing %s vs %s failed; returning them to the head of the queue", a, b, exc_info=True)
            await self.queue.requeue_front(a, b)
            if channel_id is not None:
                await self._drop_channel(channel_id)
            raise PairingFailed() from e

        log.info("Duel %s created: %s vs %s (starter %s) in channel %s",
                 duel.id, a, b, duel.starter_id, channel_id)
        return duel

    async def _drop_channel(self, channel_id: int) -> None:
        try:
            await self.chat.delete_channel(channel_id)
        except Exception:
            log.debug("Could not remove channel %s of a failed pairing", channel_id, exc_info=True)
