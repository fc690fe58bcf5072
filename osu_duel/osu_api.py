"""
osu! API v2 access: ranked-map catalog search (client credentials) and
per-player skill signals (the player's own OAuth link).

Network trouble never escapes this module: catalog pages come back empty and
skill signals come back as ``None``, which callers treat as "use defaults".
Profile lookups raise ``OsuUnavailable`` so the command can say so.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from . import db
from .logging_config import get_logger
from .models import Beatmap, OsuProfile, SkillSignal, TopPlay
from .pool import signal_from_scores
from .rules import NotLinked, OsuUnavailable

log = get_logger(__name__)

OSU_BASE = "https://osu.ppy.sh"
API_BASE = f"{OSU_BASE}/api/v2"
TOKEN_URL = f"{OSU_BASE}/oauth/token"
BEST_SCORES = 20
TOP_PLAYS = 5
EXPIRY_MARGIN = 60.0

_NET_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


class TokenCache:
    """Holds one bearer token and its expiry; refreshes on demand.

    ``fetch`` returns ``(access_token, expires_in_seconds)``.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[tuple[str, float]]],
        margin: float = EXPIRY_MARGIN,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._margin = margin
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    async def get(self) -> str:
        async with self._lock:
            if self.valid:
                return self._token  # type: ignore[return-value]
            return await self._refresh()

    async def force_refresh(self) -> str:
        async with self._lock:
            return await self._refresh()

    async def _refresh(self) -> str:
        token, expires_in = await self._fetch()
        self._token = token
        self._expires_at = self._clock() + max(0.0, float(expires_in) - self._margin)
        log.debug("Refreshed app token, valid for %.0fs", self._expires_at - self._clock())
        return token


def _beatmap_from_api(bm: dict[str, Any], bset: dict[str, Any]) -> Beatmap | None:
    sr = bm.get("difficulty_rating")
    if not isinstance(sr, (int, float)) or "id" not in bm:
        return None
    return Beatmap(
        beatmap_id=int(bm["id"]),
        version=str(bm.get("version") or "?"),
        artist=str(bset.get("artist") or "?"),
        title=str(bset.get("title") or "?"),
        stars=float(sr),
        bpm=bm.get("bpm"),
        cover=(bset.get("covers") or {}).get("cover"),
    )


def parse_beatmapsets(payload: dict[str, Any]) -> list[list[Beatmap]]:
    """Turn a ``/beatmapsets/search`` response into per-set difficulty lists."""
    out = []
    for bset in payload.get("beatmapsets") or []:
        diffs = [b for b in (_beatmap_from_api(bm, bset) for bm in bset.get("beatmaps") or []) if b]
        if diffs:
            out.append(diffs)
    return out


def _mod_names(mods: Any) -> list[str]:
    return [m if isinstance(m, str) else m.get("acronym", "") for m in mods or []]


def _top_play(score: dict[str, Any]) -> TopPlay:
    bset = score.get("beatmapset") or {}
    bm = score.get("beatmap") or {}
    title = f"{bset.get('artist', '?')} - {bset.get('title', '?')} [{bm.get('version', '?')}]"
    return TopPlay(title, score.get("pp"), score.get("accuracy"), _mod_names(score.get("mods")))


def parse_profile(me: dict[str, Any], best: list[dict[str, Any]] | None = None) -> OsuProfile:
    stats = me.get("statistics") or {}
    return OsuProfile(
        osu_user_id=int(me["id"]),
        username=me.get("username") or str(me["id"]),
        avatar_url=me.get("avatar_url"),
        pp=stats.get("pp"),
        global_rank=stats.get("global_rank"),
        country_rank=stats.get("country_rank"),
        accuracy=stats.get("hit_accuracy"),
        level=(stats.get("level") or {}).get("current"),
        play_count=stats.get("play_count"),
        top_plays=[_top_play(s) for s in best or []],
    )


class OsuClient:
    """Catalog side of the osu! API (implements ``MapCatalog``)."""

    def __init__(self, client_id: str, client_secret: str, session: aiohttp.ClientSession | None = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self._session = session
        self.app_token = TokenCache(self._client_credentials)

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15))
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _token_request(self, data: dict[str, str]) -> dict[str, Any]:
        async with self.session.post(TOKEN_URL, data=data, headers={"Accept": "application/json"}) as resp:
            resp.raise_for_status()
            return await resp.json()

    async def _client_credentials(self) -> tuple[str, float]:
        body = await self._token_request({
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "client_credentials",
            "scope": "public",
        })
        return body["access_token"], float(body.get("expires_in", 3600))

    async def refresh_user_token(self, refresh_token: str) -> dict[str, Any]:
        return await self._token_request({
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "scope": "public identify",
        })

    async def api_get(self, path: str, token: str, params: dict[str, Any] | None = None) -> Any:
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        async with self.session.get(f"{API_BASE}{path}", params=params, headers=headers) as resp:
            resp.raise_for_status()
            return await resp.json()

    async def ranked_page(self, page: int) -> list[list[Beatmap]]:
        params = {"m": 0, "s": "ranked", "page": page}
        try:
            token = await self.app_token.get()
            try:
                payload = await self.api_get("/beatmapsets/search", token, params)
            except aiohttp.ClientResponseError as e:
                if e.status != 401:
                    raise
                token = await self.app_token.force_refresh()
                payload = await self.api_get("/beatmapsets/search", token, params)
        except _NET_ERRORS:
            log.warning("Catalog page %s unavailable", page, exc_info=True)
            return []
        return parse_beatmapsets(payload or {})


class OsuAccounts:
    """Account-link side (implements ``AccountLink``) backed by the ``osu_links`` table."""

    def __init__(self, client: OsuClient):
        self.client = client

    async def is_linked(self, user_id: int) -> bool:
        return await db.is_linked(user_id)

    async def _user_token(self, link: dict) -> str:
        expires_at = link.get("expires_at") or 0
        if link.get("access_token") and time.time() < expires_at:
            return link["access_token"]
        refreshed = await self.client.refresh_user_token(link["refresh_token"])
        token = refreshed["access_token"]
        await db.save_link(
            link["user_id"],
            link.get("osu_user_id"),
            link.get("osu_username"),
            token,
            refreshed.get("refresh_token") or link.get("refresh_token"),
            time.time() + float(refreshed.get("expires_in", 0)),
        )
        return token

    async def skill_signal(self, user_id: int) -> Optional[SkillSignal]:
        link = await db.get_link(user_id)
        if not link:
            return None
        try:
            token = await self._user_token(link)
            me = await self.client.api_get("/me/osu", token)
            best = await self.client.api_get(
                f"/users/{me['id']}/scores/best", token,
                {"mode": "osu", "limit": BEST_SCORES, "legacy_only": 0},
            )
        except (*_NET_ERRORS, KeyError, TypeError):
            log.warning("Skill signal unavailable for user=%s", user_id, exc_info=True)
            return None

        stars, mods = [], []
        for score in best or []:
            sr = (score.get("beatmap") or {}).get("difficulty_rating")
            if isinstance(sr, (int, float)):
                stars.append(sr)
            mods.append(_mod_names(score.get("mods")))
        return signal_from_scores(stars, mods, me.get("username"))

    async def profile(self, user_id: int, top_plays: int = TOP_PLAYS) -> OsuProfile:
        link = await db.get_link(user_id)
        if not link:
            raise NotLinked()
        try:
            token = await self._user_token(link)
            me = await self.client.api_get("/me/osu", token)
            best = []
            if top_plays:
                best = await self.client.api_get(
                    f"/users/{me['id']}/scores/best", token,
                    {"mode": "osu", "limit": top_plays, "legacy_only": 0},
                )
            return parse_profile(me, best)
        except (*_NET_ERRORS, KeyError, TypeError, ValueError) as e:
            log.warning("osu! profile unavailable for user=%s", user_id, exc_info=True)
            raise OsuUnavailable() from e
