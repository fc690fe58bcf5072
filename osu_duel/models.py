"""
Data models for the BO3 duel system.

A ``Duel`` is stored as a single JSON document; ``to_dict``/``from_dict`` are the
only (de)serialisation path and ``from_dict`` raises ``ValueError``/``KeyError``
on malformed input so the store can detect corruption.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Side(str, Enum):
    A = "a"
    B = "b"

    @property
    def other(self) -> "Side":
        return Side.B if self is Side.A else Side.A


class Phase(str, Enum):
    BAN_A = "BAN_A"
    BAN_B = "BAN_B"
    PICK_A = "PICK_A"
    PICK_B = "PICK_B"
    PLAYING = "PLAYING"
    DISPUTE = "DISPUTE"
    FINISHED = "FINISHED"


class Slot(str, Enum):
    NM1 = "NM1"
    HD1 = "HD1"
    HR1 = "HR1"
    DT1 = "DT1"
    TB = "TB"

    @property
    def mod(self) -> str:
        return SLOT_MODS[self]


SLOT_MODS = {
    Slot.NM1: "NM",
    Slot.HD1: "HD",
    Slot.HR1: "HR",
    Slot.DT1: "DT",
    Slot.TB: "TB",
}

TIEBREAK = Slot.TB
DRAFTABLE = tuple(s for s in Slot if s is not TIEBREAK)


class Outcome(str, Enum):
    WIN = "WIN"
    LOSE = "LOSE"


class DraftAction(str, Enum):
    BAN = "BAN"
    PICK = "PICK"


@dataclass
class Beatmap:
    beatmap_id: int
    version: str
    artist: str
    title: str
    stars: float
    bpm: float | None = None
    cover: str | None = None

    @property
    def url(self) -> str:
        return f"https://osu.ppy.sh/b/{self.beatmap_id}"

    @property
    def name(self) -> str:
        return f"{self.artist} - {self.title} [{self.version}]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "beatmap_id": self.beatmap_id,
            "version": self.version,
            "artist": self.artist,
            "title": self.title,
            "stars": self.stars,
            "bpm": self.bpm,
            "cover": self.cover,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Beatmap":
        return cls(
            beatmap_id=int(d["beatmap_id"]),
            version=str(d["version"]),
            artist=str(d["artist"]),
            title=str(d["title"]),
            stars=float(d["stars"]),
            bpm=d.get("bpm"),
            cover=d.get("cover"),
        )


@dataclass
class MapSlot:
    slot: Slot
    map: Optional[Beatmap] = None

    @property
    def mod(self) -> str:
        return self.slot.mod


@dataclass
class Pick:
    slot: Slot
    chosen_by: Side


@dataclass
class StarRange:
    min: float
    max: float
    note: str = ""

    def shifted(self, lo: float, hi: float) -> "StarRange":
        return StarRange(self.min + lo, self.max + hi, self.note)


@dataclass
class SkillSignal:
    """Difficulty profile from a player's best scores."""
    p25: float
    p75: float
    username: str | None = None
    preferred_mods: list[str] = field(default_factory=list)


@dataclass
class TopPlay:
    title: str
    pp: float | None = None
    accuracy: float | None = None
    mods: list[str] = field(default_factory=list)


@dataclass
class OsuProfile:
    """What ``/me/osu`` says about a linked player, plus their best plays."""
    osu_user_id: int
    username: str
    avatar_url: str | None = None
    pp: float | None = None
    global_rank: int | None = None
    country_rank: int | None = None
    accuracy: float | None = None
    level: int | None = None
    play_count: int | None = None
    top_plays: list[TopPlay] = field(default_factory=list)

    @property
    def url(self) -> str:
        return f"https://osu.ppy.sh/users/{self.osu_user_id}"


@dataclass
class Duel:
    id: int
    channel_id: int
    a: int
    b: int
    starter_id: int
    pool: list[MapSlot]
    star_range: StarRange
    guild_id: int = 0
    room_name: str = ""
    password: str = ""
    phase: Phase = Phase.BAN_A
    bans: dict[Side, list[Slot]] = field(default_factory=lambda: {Side.A: [], Side.B: []})
    picks: list[Pick] = field(default_factory=list)
    score: dict[Side, int] = field(default_factory=lambda: {Side.A: 0, Side.B: 0})
    reports: dict[Slot, dict[Side, Optional[Outcome]]] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.a == self.b:
            raise ValueError("A duel needs two different players")

    def player(self, side: Side) -> int:
        return self.a if side is Side.A else self.b

    def side_of(self, user_id: int) -> Side | None:
        if user_id == self.a:
            return Side.A
        if user_id == self.b:
            return Side.B
        return None

    @property
    def starter_side(self) -> Side:
        return Side.A if self.starter_id == self.a else Side.B

    @property
    def score_line(self) -> str:
        return f"{self.score[Side.A]}-{self.score[Side.B]}"

    def banned(self) -> set[Slot]:
        return set(self.bans[Side.A]) | set(self.bans[Side.B])

    def picked(self) -> set[Slot]:
        return {p.slot for p in self.picks}

    def available(self) -> list[Slot]:
        """Draftable slots nobody has banned or picked yet."""
        taken = self.banned() | self.picked()
        return [s for s in DRAFTABLE if s not in taken]

    def map_slot(self, slot: Slot) -> MapSlot | None:
        return next((m for m in self.pool if m.slot is slot), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "guild_id": self.guild_id,
            "room_name": self.room_name,
            "password": self.password,
            "players": {"a": self.a, "b": self.b},
            "starter_id": self.starter_id,
            "phase": self.phase.value,
            "bans": {side.value: [s.value for s in slots] for side, slots in self.bans.items()},
            "picks": [{"slot": p.slot.value, "chosen_by": p.chosen_by.value} for p in self.picks],
            "pool": [
                {"slot": m.slot.value, "mod": m.mod, "map": m.map.to_dict() if m.map else None}
                for m in self.pool
            ],
            "score": {side.value: n for side, n in self.score.items()},
            "reports": {
                slot.value: {side.value: (o.value if o else None) for side, o in entry.items()}
                for slot, entry in self.reports.items()
            },
            "star_range": {"min": self.star_range.min, "max": self.star_range.max, "note": self.star_range.note},
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Duel":
        def outcome(v: Any) -> Optional[Outcome]:
            return Outcome(v) if v is not None else None

        sr = d["star_range"]
        return cls(
            id=int(d["id"]),
            channel_id=int(d["channel_id"]),
            guild_id=int(d.get("guild_id") or 0),
            room_name=str(d.get("room_name") or ""),
            password=str(d.get("password") or ""),
            a=int(d["players"]["a"]),
            b=int(d["players"]["b"]),
            starter_id=int(d["starter_id"]),
            phase=Phase(d["phase"]),
            bans={Side(k): [Slot(s) for s in v] for k, v in d["bans"].items()},
            picks=[Pick(Slot(p["slot"]), Side(p["chosen_by"])) for p in d["picks"]],
            pool=[
                MapSlot(Slot(m["slot"]), Beatmap.from_dict(m["map"]) if m.get("map") else None)
                for m in d["pool"]
            ],
            score={Side(k): int(v) for k, v in d["score"].items()},
            reports={
                Slot(slot): {Side(k): outcome(v) for k, v in entry.items()}
                for slot, entry in d.get("reports", {}).items()
            },
            star_range=StarRange(float(sr["min"]), float(sr["max"]), str(sr.get("note") or "")),
            created_at=float(d.get("created_at") or time.time()),
        )


@dataclass
class RatingRecord:
    user_id: int
    rating: int = 0
    wins: int = 0
    losses: int = 0
    games: int = 0
    winstreak: int = 0
    losestreak: int = 0

    @property
    def streak_text(self) -> str:
        if self.winstreak > 0:
            return f"{self.winstreak}W streak"
        if self.losestreak > 0:
            return f"{self.losestreak}L streak"
        return "No streak"
