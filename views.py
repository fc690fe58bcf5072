from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import discord

import fmt
from osu_duel.models import DraftAction, Duel, OsuProfile, Outcome, Phase, RatingRecord, Side, Slot
from osu_duel.rules import BAN_PHASES, PICK_PHASES

PAYLOAD_PREFIX = "duel"
ROW_WIDTH = 5  # Discord allows five buttons per action row


class ButtonAction(str, Enum):
    BAN = "BAN"
    PICK = "PICK"
    WIN = "WIN"
    LOSE = "LOSE"


@dataclass(frozen=True)
class DuelButton:
    """Correlation payload carried by every duel button: ``duel:<id>:<action>:<slot>``."""
    duel_id: int
    action: ButtonAction
    slot: Slot

    @property
    def custom_id(self) -> str:
        return f"{PAYLOAD_PREFIX}:{self.duel_id}:{self.action.value}:{self.slot.value}"

    @property
    def draft_action(self) -> DraftAction | None:
        if self.action in (ButtonAction.BAN, ButtonAction.PICK):
            return DraftAction(self.action.value)
        return None

    @property
    def outcome(self) -> Outcome | None:
        if self.action in (ButtonAction.WIN, ButtonAction.LOSE):
            return Outcome(self.action.value)
        return None

    @classmethod
    def parse(cls, custom_id: str | None) -> DuelButton | None:
        """Decode a button id; anything that is not a well-formed duel payload gives None."""
        if not custom_id:
            return None
        parts = custom_id.split(":")
        if len(parts) != 4 or parts[0] != PAYLOAD_PREFIX or not parts[1].isdigit():
            return None
        try:
            return cls(int(parts[1]), ButtonAction(parts[2]), Slot(parts[3]))
        except ValueError:
            return None


def draft_action_for(phase: Phase) -> ButtonAction | None:
    if phase in BAN_PHASES:
        return ButtonAction.BAN
    if phase in PICK_PHASES:
        return ButtonAction.PICK
    return None


def draft_view(duel: Duel) -> discord.ui.View | None:
    """Ban/pick buttons for the slots still open, or None outside the draft."""
    action = draft_action_for(duel.phase)
    if action is None:
        return None
    view = discord.ui.View(timeout=None)
    style = discord.ButtonStyle.danger if action is ButtonAction.BAN else discord.ButtonStyle.primary
    for i, slot in enumerate(duel.available()):
        view.add_item(discord.ui.Button(
            label=f"{action.value} {slot.value}",
            style=style,
            custom_id=DuelButton(duel.id, action, slot).custom_id,
            row=i // ROW_WIDTH,
        ))
    return view


def report_view(duel: Duel, slot: Slot) -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(discord.ui.Button(
        label="I WON",
        style=discord.ButtonStyle.success,
        custom_id=DuelButton(duel.id, ButtonAction.WIN, slot).custom_id,
    ))
    view.add_item(discord.ui.Button(
        label="I LOST",
        style=discord.ButtonStyle.danger,
        custom_id=DuelButton(duel.id, ButtonAction.LOSE, slot).custom_id,
    ))
    return view


def pool_embed(duel: Duel) -> discord.Embed:
    e = discord.Embed(title="Duel Pool | BO3", description="\n\n".join(fmt.pool_lines(duel))[:3900])
    e.add_field(name="Room", value=fmt.bold(duel.room_name or "-"), inline=True)
    e.add_field(name="Password", value=fmt.bold(duel.password or "-"), inline=True)
    e.add_field(name="Starter", value=fmt.mention(duel.starter_id), inline=True)
    e.add_field(name="Score", value=f"P1: {fmt.bold(duel.score[Side.A])} | P2: {fmt.bold(duel.score[Side.B])}", inline=True)
    e.add_field(name="Range", value=fmt.bold(fmt.star_window(duel.star_range)), inline=True)
    e.add_field(name="Phase", value=fmt.bold(duel.phase.value), inline=True)
    cover = next((m.map.cover for m in duel.pool if m.map and m.map.cover), None)
    if cover:
        e.set_thumbnail(url=cover)
    return e


def profile_embed(profile: OsuProfile, record: RatingRecord) -> discord.Embed:
    e = discord.Embed(title=f"{profile.username} | osu! profile", url=profile.url)
    if profile.avatar_url:
        e.set_thumbnail(url=profile.avatar_url)
    for name, value in fmt.profile_fields(profile, record):
        e.add_field(name=name, value=value, inline=True)
    e.add_field(name="Top Plays (Best)", value=fmt.top_plays(profile.top_plays), inline=False)
    return e
