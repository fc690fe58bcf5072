import time

import aiohttp
import pytest

from osu_duel import db
from osu_duel.osu_api import OsuAccounts, OsuClient, TokenCache, parse_beatmapsets, parse_profile
from osu_duel.rules import NotLinked, OsuUnavailable

SEARCH_PAYLOAD = {
    "beatmapsets": [
        {
            "artist": "xi",
            "title": "Blue Zenith",
            "covers": {"cover": "https://assets.ppy.sh/cover.jpg"},
            "beatmaps": [
                {"id": 1, "version": "Easy", "difficulty_rating": 2.1, "bpm": 200},
                {"id": 2, "version": "FOUR DIMENSIONS", "difficulty_rating": 7.3, "bpm": 200},
                {"id": 3, "version": "broken"},
            ],
        },
        {"artist": "empty", "title": "set", "beatmaps": []},
    ]
}


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def test_token_cache_reuses_until_expiry():
    issued = []
    clock = Clock()

    async def fetch():
        issued.append(f"tok{len(issued)}")
        return issued[-1], 3600

    cache = TokenCache(fetch, margin=60, clock=clock)
    assert await cache.get() == "tok0"
    clock.now = 3500
    assert await cache.get() == "tok0"
    clock.now = 3541
    assert await cache.get() == "tok1"
    assert await cache.force_refresh() == "tok2"
    assert cache.valid


def test_parse_beatmapsets():
    sets = parse_beatmapsets(SEARCH_PAYLOAD)
    assert len(sets) == 1
    easy, hard = sets[0]
    assert (easy.beatmap_id, easy.stars, easy.version) == (1, 2.1, "Easy")
    assert hard.name == "xi - Blue Zenith [FOUR DIMENSIONS]"
    assert hard.cover == "https://assets.ppy.sh/cover.jpg"
    assert hard.url == "https://osu.ppy.sh/b/2"
    assert parse_beatmapsets({}) == []


def _client_with(monkeypatch, responses):
    """OsuClient whose API calls replay ``responses`` (exceptions are raised)."""
    client = OsuClient("id", "secret")
    calls = []

    async def fake_fetch():
        return "app-token", 3600

    async def fake_get(path, token, params=None):
        calls.append((path, token))
        item = responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    client.app_token = TokenCache(fake_fetch)
    monkeypatch.setattr(client, "api_get", fake_get)
    return client, calls


async def test_ranked_page_refreshes_token_once_on_401(monkeypatch):
    client, calls = _client_with(monkeypatch, [
        aiohttp.ClientResponseError(None, (), status=401),
        SEARCH_PAYLOAD,
    ])
    sets = await client.ranked_page(3)
    assert len(sets) == 1
    assert [c[0] for c in calls] == ["/beatmapsets/search", "/beatmapsets/search"]


async def test_ranked_page_degrades_to_empty(monkeypatch):
    client, _ = _client_with(monkeypatch, [aiohttp.ClientConnectionError("down")])
    assert await client.ranked_page(1) == []


async def test_skill_signal_from_best_scores(store, monkeypatch):
    await db.save_link(5, 900, "player", "user-token", "refresh", time.time() + 3600)
    best = [
        {"beatmap": {"difficulty_rating": sr}, "mods": mods}
        for sr, mods in [(4.0, ["HD"]), (5.0, ["HD"]), (6.0, [{"acronym": "HD"}]), (7.0, ["HD"]), (8.0, [])]
    ]
    client, calls = _client_with(monkeypatch, [{"id": 900, "username": "player"}, best])
    accounts = OsuAccounts(client)

    assert await accounts.is_linked(5)
    sig = await accounts.skill_signal(5)
    assert (sig.p25, sig.p75) == (5.0, 7.0)
    assert sig.preferred_mods == ["HD"]
    assert sig.username == "player"
    assert calls == [("/me/osu", "user-token"), ("/users/900/scores/best", "user-token")]


async def test_skill_signal_refreshes_expired_user_token(store, monkeypatch):
    await db.save_link(6, 901, "late", "old-token", "old-refresh", time.time() - 10)
    client, calls = _client_with(monkeypatch, [{"id": 901, "username": "late"}, []])

    async def refresh(refresh_token):
        assert refresh_token == "old-refresh"
        return {"access_token": "new-token", "refresh_token": "new-refresh", "expires_in": 86400}

    monkeypatch.setattr(client, "refresh_user_token", refresh)
    assert await OsuAccounts(client).skill_signal(6) is None
    link = await db.get_link(6)
    assert (link["access_token"], link["refresh_token"]) == ("new-token", "new-refresh")
    assert link["expires_at"] > time.time()
    assert calls[0] == ("/me/osu", "new-token")


async def test_skill_signal_unavailable(store, monkeypatch):
    client, _ = _client_with(monkeypatch, [aiohttp.ClientConnectionError("down")])
    accounts = OsuAccounts(client)
    assert await accounts.skill_signal(404) is None

    await db.save_link(7, 902, "p", "tok", "ref", time.time() + 3600)
    assert await accounts.skill_signal(7) is None


ME_PAYLOAD = {
    "id": 900,
    "username": "player",
    "avatar_url": "https://a.ppy.sh/900",
    "statistics": {
        "pp": 7245.6, "global_rank": 4321, "country_rank": 210, "hit_accuracy": 98.76,
        "play_count": 54321, "level": {"current": 101},
    },
}
BEST_PAYLOAD = [
    {
        "pp": 512.3, "accuracy": 0.9912, "mods": ["HD", {"acronym": "DT"}],
        "beatmap": {"version": "Extra"}, "beatmapset": {"artist": "xi", "title": "Blue Zenith"},
    },
]


def test_parse_profile():
    prof = parse_profile(ME_PAYLOAD, BEST_PAYLOAD)
    assert (prof.osu_user_id, prof.username, prof.global_rank) == (900, "player", 4321)
    assert (prof.pp, prof.country_rank, prof.accuracy, prof.level) == (7245.6, 210, 98.76, 101)
    assert prof.url == "https://osu.ppy.sh/users/900"
    play = prof.top_plays[0]
    assert play.title == "xi - Blue Zenith [Extra]"
    assert play.mods == ["HD", "DT"]
    assert parse_profile({"id": 5}).top_plays == []


async def test_profile_reads_me_and_top_five(store, monkeypatch):
    await db.save_link(5, 900, "player", "user-token", "refresh", time.time() + 3600)
    client, calls = _client_with(monkeypatch, [ME_PAYLOAD, BEST_PAYLOAD])
    prof = await OsuAccounts(client).profile(5)
    assert prof.global_rank == 4321
    assert len(prof.top_plays) == 1
    assert calls == [("/me/osu", "user-token"), ("/users/900/scores/best", "user-token")]


async def test_profile_errors(store, monkeypatch):
    client, calls = _client_with(monkeypatch, [aiohttp.ClientConnectionError("down")])
    accounts = OsuAccounts(client)
    with pytest.raises(NotLinked):
        await accounts.profile(404)

    await db.save_link(7, 902, "p", "tok", "ref", time.time() + 3600)
    with pytest.raises(OsuUnavailable):
        await accounts.profile(7, top_plays=0)
    assert calls == [("/me/osu", "tok")]
