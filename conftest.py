"""Shared fixtures and in-memory collaborators for the duel tests."""

import random

import pytest

from osu_duel import db
from osu_duel.matchmaking import MatchMaker, MatchQueue
from osu_duel.models import Beatmap, Duel, MapSlot, OsuProfile, Slot, StarRange
from osu_duel.pool import PoolGenerator
from osu_duel.rules import NotLinked, OsuUnavailable
from osu_duel.service import DuelService


def beatmap(beatmap_id: int, stars: float) -> Beatmap:
    return Beatmap(beatmap_id, f"Diff {beatmap_id}", "Artist", f"Song {beatmap_id}", stars, bpm=180, cover=None)


def make_duel(a=1, b=2, starter=None, duel_id=1, channel_id=500) -> Duel:
    return Duel(
        id=duel_id,
        channel_id=channel_id,
        a=a,
        b=b,
        starter_id=a if starter is None else starter,
        pool=[MapSlot(s, beatmap(100 + i, 5.0)) for i, s in enumerate(Slot)],
        star_range=StarRange(4.5, 6.0, "test"),
    )


class FakeCatalog:
    """Every page holds the same sets: one single-difficulty set per map."""

    def __init__(self, maps):
        self.maps = list(maps)
        self.calls = 0

    async def ranked_page(self, page):
        self.calls += 1
        return [[m] for m in self.maps]


class FakeAccounts:
    def __init__(self, linked=(), signals=None, broken=False, profiles=None):
        self.linked = set(linked)
        self.signals = signals or {}
        self.broken = broken
        self.profiles = profiles or {}

    async def is_linked(self, user_id):
        return user_id in self.linked

    async def skill_signal(self, user_id):
        if self.broken:
            raise RuntimeError("osu! API down")
        return self.signals.get(user_id)

    async def profile(self, user_id, top_plays=5):
        if user_id not in self.linked:
            raise NotLinked()
        if self.broken:
            raise OsuUnavailable()
        return self.profiles.get(user_id) or OsuProfile(user_id, f"player{user_id}")


class FakeChat:
    """Records every call as ``(method, args)``; methods listed in ``failing`` raise."""

    def __init__(self, failing=()):
        self.events = []
        self.failing = set(failing)
        self.next_channel = 1000

    def names(self):
        return [e[0] for e in self.events]

    def _record(self, name, *args):
        self.events.append((name, args))
        if name in self.failing:
            raise RuntimeError(f"{name} failed")

    async def create_duel_channel(self, guild_id, name, a, b):
        self._record("create_duel_channel", guild_id, name, a, b)
        self.next_channel += 1
        return self.next_channel

    async def send_intro(self, duel):
        self._record("send_intro", duel.id)

    async def send_pool(self, duel):
        self._record("send_pool", duel.id, duel.phase)

    async def send_draft_action(self, duel, user_id, action, slot):
        self._record("send_draft_action", user_id, action, slot)

    async def announce_map(self, duel, slot):
        self._record("announce_map", slot)

    async def announce_confirmed(self, duel, slot, winner_id):
        self._record("announce_confirmed", slot, winner_id)

    async def announce_dispute(self, duel, slot):
        self._record("announce_dispute", slot)

    async def announce_resolved(self, duel, slot, winner_id):
        self._record("announce_resolved", slot, winner_id)

    async def announce_finish(self, duel, winner, loser):
        self._record("announce_finish", winner, loser)

    async def lock_channel(self, duel):
        self._record("lock_channel", duel.channel_id)

    async def announce_cleanup(self, channel_id, minutes):
        self._record("announce_cleanup", channel_id, minutes)

    async def delete_channel(self, channel_id):
        self._record("delete_channel", channel_id)


@pytest.fixture
async def store(tmp_path):
    await db.init_db(str(tmp_path / "duel.sqlite"))
    return db


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def catalog():
    return FakeCatalog([beatmap(i, 5.0 + i / 100) for i in range(1, 30)])


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def accounts():
    return FakeAccounts(linked={1, 2, 3, 4})


@pytest.fixture
def make_service(store, catalog, rng):
    """Build a DuelService over fakes; ``sleep`` defaults to returning at once."""

    def build(chat=None, accounts=None, sleep=None, delete_minutes=5, digit_roles=None):
        async def no_wait(_seconds):
            return None

        matchmaker = MatchMaker(
            MatchQueue(),
            accounts or FakeAccounts(linked={1, 2, 3, 4}),
            PoolGenerator(catalog, rng, pages=2, tries=5, retry_tries=5),
            chat or FakeChat(),
            rng=rng,
        )
        return DuelService(
            matchmaker, delta=25, delete_minutes=delete_minutes, sleep=sleep or no_wait, digit_roles=digit_roles,
        )

    return build
