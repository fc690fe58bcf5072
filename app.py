# app.py
# Discord osu! duel bot: BO3 queue, private duel rooms with ban/pick buttons, self-reported results

from __future__ import annotations

import random
from typing import Optional

import discord
from discord import app_commands

import fmt
import views
from osu_duel import config, db
from osu_duel.logging_config import get_logger, setup_logging
from osu_duel.matchmaking import MatchMaker, MatchQueue
from osu_duel.models import Duel, Phase, RatingRecord, Slot
from osu_duel.osu_api import OsuAccounts, OsuClient
from osu_duel.pool import PoolGenerator
from osu_duel.service import DuelService, Result

setup_logging()
log = get_logger(__name__)

ALLOWED_MENTIONS = discord.AllowedMentions(users=True, roles=True, everyone=False)

# User-facing text for service reason codes
REASON_TEXT = {
    "already_queued": "❌ You're already in the duel queue.",
    "not_in_queue": "❌ You're not in the duel queue.",
    "no_duel": "❌ Duel not found (maybe ended).",
    "not_player": "❌ You are not a player in this duel.",
    "wrong_phase": "❌ Ban/Pick is over.",
    "wrong_turn": "❌ Not your turn.",
    "invalid_slot": "❌ That slot cannot be chosen.",
    "not_reportable": "❌ Not in reporting state.",
    "slot_not_active": "❌ That map is not active.",
    "winner_not_player": "❌ Winner must be one of the duel players.",
    "no_active_map": "❌ No active map to resolve.",
    "no_map_found": "❌ Couldn't find a map in that range, try again.",
    "pairing_failed": "❌ Couldn't set up the duel room. The pair stays at the front of the queue.",
    "not_linked": "❌ You are not linked yet. Link your osu! account first.",
    "osu_unavailable": "❌ Failed to fetch your osu! profile. Try again, or link again if needed.",
    "no_rank": "❌ Could not read your rank from osu!. Try again.",
    "no_role_match": "❌ No rank role is configured for your rank.",
}


def reason_text(res: Result) -> str:
    return REASON_TEXT.get(res.reason or "", "❌ Something went wrong.")


class DuelBot(discord.Client):
    async def close(self):
        await osu.close()
        await super().close()


# Intents
intents = discord.Intents.none()
intents.guilds = True

# Discord client + tree
bot = DuelBot(intents=intents)
tree = app_commands.CommandTree(bot)


class DiscordChat:
    """Posts duel state into the duel's private text channel."""

    def __init__(self, client: discord.Client):
        self.client = client

    async def _channel(self, channel_id: int) -> discord.abc.Messageable:
        return self.client.get_channel(channel_id) or await self.client.fetch_channel(channel_id)

    async def _send(self, channel_id: int, content: str | None = None, **kwargs) -> None:
        ch = await self._channel(channel_id)
        await ch.send(content, allowed_mentions=ALLOWED_MENTIONS, **kwargs)

    async def create_duel_channel(self, guild_id: int, name: str, a: int, b: int) -> int:
        guild = self.client.get_guild(guild_id) or await self.client.fetch_guild(guild_id)
        player = discord.PermissionOverwrite(
            view_channel=True, send_messages=True, read_message_history=True, attach_files=True,
        )
        overwrites = {
            guild.default_role: discord.PermissionOverwrite(view_channel=False),
            discord.Object(id=a, type=discord.Member): player,
            discord.Object(id=b, type=discord.Member): player,
        }
        if config.SUPPORT_ROLE_ID:
            overwrites[discord.Object(id=config.SUPPORT_ROLE_ID, type=discord.Role)] = discord.PermissionOverwrite(
                view_channel=True, send_messages=True, read_message_history=True, manage_messages=True,
            )
        category = guild.get_channel(config.DUEL_CATEGORY_ID) if config.DUEL_CATEGORY_ID else None
        if category is not None and not isinstance(category, discord.CategoryChannel):
            log.warning("DUEL_CATEGORY_ID %s is not a category; creating %s without one", config.DUEL_CATEGORY_ID, name)
            category = None
        channel = await guild.create_text_channel(name, overwrites=overwrites, category=category, reason="Duel match")
        log.info("Created duel channel %s (%s) for %s vs %s", name, channel.id, a, b)
        return channel.id

    async def send_intro(self, duel: Duel) -> None:
        await self._send(duel.channel_id, fmt.intro(duel))

    async def send_pool(self, duel: Duel) -> None:
        kwargs = {"embed": views.pool_embed(duel)}
        view = views.draft_view(duel)
        if view is not None:
            kwargs["view"] = view
        await self._send(duel.channel_id, **kwargs)

    async def send_draft_action(self, duel: Duel, user_id: int, action: str, slot: Slot) -> None:
        await self._send(duel.channel_id, fmt.draft_action(user_id, action, slot.value))
        if duel.phase is Phase.PICK_A:
            await self._send(duel.channel_id, f"🎯 {fmt.bold('Pick phase begins.')} Starter picks first.")
        elif duel.phase is Phase.PLAYING:
            await self._send(duel.channel_id, f"✅ {fmt.bold('Picks locked.')} Match starts now!")

    async def announce_map(self, duel: Duel, slot: Slot | None) -> None:
        entry = duel.map_slot(slot) if slot else None
        if entry is None:
            return
        await self._send(duel.channel_id, fmt.map_announcement(duel, entry), view=views.report_view(duel, slot))

    async def announce_confirmed(self, duel: Duel, slot: Slot, winner_id: int) -> None:
        await self._send(duel.channel_id, fmt.confirmed(slot.value, winner_id))

    async def announce_dispute(self, duel: Duel, slot: Slot) -> None:
        await self._send(duel.channel_id, fmt.dispute(duel, slot.value, config.SUPPORT_ROLE_ID))

    async def announce_resolved(self, duel: Duel, slot: Slot, winner_id: int) -> None:
        await self._send(duel.channel_id, fmt.resolved(duel, slot.value, winner_id))

    async def announce_finish(self, duel: Duel, winner: RatingRecord, loser: RatingRecord) -> None:
        await self._send(duel.channel_id, fmt.finished(duel, winner, loser, config.RATING_DELTA))

    async def lock_channel(self, duel: Duel) -> None:
        ch = await self._channel(duel.channel_id)
        read_only = discord.PermissionOverwrite(view_channel=True, read_message_history=True, send_messages=False)
        for uid in (duel.a, duel.b):
            await ch.set_permissions(discord.Object(id=uid, type=discord.Member), overwrite=read_only,
                                     reason="Duel finished")

    async def announce_cleanup(self, channel_id: int, minutes: float) -> None:
        await self._send(channel_id, fmt.cleanup_notice(minutes))

    async def delete_channel(self, channel_id: int) -> None:
        try:
            ch = await self._channel(channel_id)
            await ch.delete(reason="Duel finished - auto cleanup")
        except discord.NotFound:
            log.debug("Duel channel %s already gone", channel_id)


# --- Wiring ---
rng = random.Random()
osu = OsuClient(config.OSU_CLIENT_ID, config.OSU_CLIENT_SECRET)
accounts = OsuAccounts(osu)
chat = DiscordChat(bot)
matchmaker = MatchMaker(
    MatchQueue(), accounts, PoolGenerator(osu, rng), chat,
    rng=rng, channel_prefix=config.DUEL_CHANNEL_PREFIX,
)
service = DuelService(
    matchmaker,
    delta=config.RATING_DELTA,
    delete_minutes=config.DUEL_DELETE_MINUTES,
    digit_roles=config.DIGIT_ROLES,
)


def _in_queue_channel(inter: discord.Interaction) -> bool:
    return not config.DUEL_QUEUE_CHANNEL_ID or inter.channel_id == config.DUEL_QUEUE_CHANNEL_ID


def _is_support(inter: discord.Interaction) -> bool:
    roles = getattr(inter.user, "roles", None) or []
    return bool(config.SUPPORT_ROLE_ID) and any(r.id == config.SUPPORT_ROLE_ID for r in roles)


# --- Discord events ---
@bot.event
async def on_ready():
    await db.init_db(config.DATABASE_PATH)

    # Sync commands
    if config.TEST_MODE and config.TEST_GUILD_ID:
        guild = discord.Object(id=config.TEST_GUILD_ID)
        tree.copy_global_to(guild=guild)
        await tree.sync(guild=guild)
        log.info("Commands synced to test guild %s", config.TEST_GUILD_ID)
    else:
        await tree.sync()
        log.info("Commands synced globally")

    status = "osu! duels [TEST MODE]" if config.TEST_MODE else "osu! duels"
    await bot.change_presence(activity=discord.Game(name=status))
    log.info("Bot ready as %s | guilds=%s | DB=%s", bot.user, len(bot.guilds), config.DATABASE_PATH)
    live = await db.active_duel_count()
    if live:
        log.info("Resuming %s duel(s) from the store", live)


@bot.event
async def on_interaction(inter: discord.Interaction):
    if inter.type is not discord.InteractionType.component:
        return
    button = views.DuelButton.parse((inter.data or {}).get("custom_id"))
    if button is None:
        return
    try:
        await handle_duel_button(inter, button)
    except Exception:
        log.exception("Duel button %s failed", button.custom_id)
        await _reply_error(inter, "❌ Something went wrong.")


async def handle_duel_button(inter: discord.Interaction, button: views.DuelButton) -> None:
    duel = await db.get_duel(button.duel_id)
    if duel is None:
        return await inter.response.send_message(REASON_TEXT["no_duel"], ephemeral=True)
    if inter.channel_id != duel.channel_id:
        return await inter.response.send_message("❌ Wrong channel.", ephemeral=True)

    await inter.response.defer()
    if button.draft_action is not None:
        res = await service.apply_draft_action(button.duel_id, inter.user.id, button.draft_action, button.slot)
        if not res.ok:
            await inter.followup.send(reason_text(res), ephemeral=True)
        return

    res = await service.apply_report(button.duel_id, inter.user.id, button.slot, button.outcome)
    if not res.ok:
        return await inter.followup.send(reason_text(res), ephemeral=True)
    await inter.followup.send(
        f"📌 Saved: {fmt.bold(button.outcome.value)} on {fmt.bold(button.slot.value)}", ephemeral=True,
    )


async def _reply_error(inter: discord.Interaction, text: str) -> None:
    try:
        if inter.response.is_done():
            await inter.followup.send(text, ephemeral=True)
        else:
            await inter.response.send_message(text, ephemeral=True)
    except discord.HTTPException:
        log.debug("Could not deliver error reply", exc_info=True)


@tree.error
async def on_app_command_error(inter: discord.Interaction, error: app_commands.AppCommandError):
    log.error("Command %s failed", getattr(inter.command, "name", "?"), exc_info=error)
    await _reply_error(inter, "❌ Something went wrong. Please try again.")


# --- Commands ---
@tree.command(name="duel", description="Join the duel queue (BO3)")
async def duel(inter: discord.Interaction):
    if not inter.guild_id:
        return await inter.response.send_message("❌ Use this in a server.", ephemeral=True)
    if not _in_queue_channel(inter):
        return await inter.response.send_message("❌ You can only queue in the duel-queue channel.", ephemeral=True)
    if not await accounts.is_linked(inter.user.id):
        return await inter.response.send_message("❌ You must link your osu! account first.", ephemeral=True)

    res = await service.enqueue(inter.user.id)
    if not res.ok:
        return await inter.response.send_message(reason_text(res), ephemeral=True)
    await inter.response.send_message(f"✅ Joined duel queue. Queue size: {fmt.bold(res.size)}", ephemeral=True)

    paired = await service.create_pairing_if_possible(inter.guild_id)
    if not paired.ok:
        await inter.followup.send(reason_text(paired), ephemeral=True)
    elif paired.duel is not None:
        await inter.followup.send(f"🎮 Duel found! Head to <#{paired.duel.channel_id}>.", ephemeral=True)


@tree.command(name="duelleave", description="Leave the duel queue")
async def duelleave(inter: discord.Interaction):
    if not _in_queue_channel(inter):
        return await inter.response.send_message("❌ Use this in the duel-queue channel.", ephemeral=True)
    res = await service.dequeue(inter.user.id)
    if not res.ok:
        return await inter.response.send_message(reason_text(res), ephemeral=True)
    await inter.response.send_message(f"✅ Left duel queue. Queue size: {fmt.bold(res.size)}", ephemeral=True)


@tree.command(name="duelqueue", description="Show who is waiting in the duel queue")
async def duelqueue(inter: discord.Interaction):
    res = await service.queue_status()
    if not res.size:
        return await inter.response.send_message("The duel queue is empty.", ephemeral=True)
    rows = []
    for i, uid in enumerate(res.users, start=1):
        rows.append([str(i), await fmt.display_name_or_cached(bot, inter.guild, uid)])
    await inter.response.send_message(
        f"⏳ {fmt.bold(res.size)} waiting\n" + fmt.mono_table(rows, headers=["#", "Player"]),
        ephemeral=True,
    )


@tree.command(name="resolve", description="Support: decide who won the CURRENT map of this duel")
@app_commands.describe(winner="Who won")
async def resolve(inter: discord.Interaction, winner: discord.User):
    if not _is_support(inter):
        return await inter.response.send_message("❌ Support only.", ephemeral=True)
    await inter.response.defer(ephemeral=True)
    res = await service.arbitrate(inter.channel_id, winner.id)
    if not res.ok:
        return await inter.followup.send(reason_text(res), ephemeral=True)
    await inter.followup.send("✅ Resolved.", ephemeral=True)


@tree.command(name="duelstats", description="Show DuelRank, record and streak")
@app_commands.describe(user="Player to look up (defaults to you)")
async def duelstats(inter: discord.Interaction, user: Optional[discord.User] = None):
    target = user or inter.user
    res = await service.stats(target.id)
    name = await fmt.display_name_or_cached(bot, inter.guild, target.id, fallback=target.name)
    await inter.response.send_message(fmt.stats(name, res.record), ephemeral=True)


@tree.command(name="r", description="Random ranked map around your skill level")
@app_commands.describe(
    min_stars="Lowest star rating",
    max_stars="Highest star rating",
    mods="Mods to suggest, e.g. HDHR or NM",
)
async def random_map(
    inter: discord.Interaction,
    min_stars: Optional[app_commands.Range[float, 0.5, 12.0]] = None,
    max_stars: Optional[app_commands.Range[float, 0.5, 12.5]] = None,
    mods: Optional[str] = None,
):
    await inter.response.defer()
    res = await service.random_map(inter.user.id, min_stars, max_stars, mods)
    if not res.ok:
        return await inter.followup.send(reason_text(res), ephemeral=True)
    picked = res.random_map
    embed = None
    if picked.beatmap.cover:
        embed = discord.Embed().set_image(url=picked.beatmap.cover)
    await inter.followup.send(fmt.random_map(picked), embed=embed or discord.utils.MISSING)


async def _sync_digit_role(member: discord.Member, res: Result) -> bool:
    """Apply a rank role change to ``member``; False when Discord refused it."""
    try:
        if res.role_remove:
            await member.remove_roles(*(discord.Object(id=r) for r in res.role_remove), reason="osu! rank role")
        if res.role_add:
            await member.add_roles(discord.Object(id=res.role_add), reason="osu! rank role")
    except discord.HTTPException:
        log.warning("Could not update rank role for %s", member.id, exc_info=True)
        return False
    return True


@tree.command(name="profile", description="Show your linked osu! profile (pp, rank, acc, top plays)")
async def profile(inter: discord.Interaction):
    await inter.response.defer()
    res = await service.profile(inter.user.id)
    if not res.ok:
        return await inter.followup.send(reason_text(res))
    await inter.followup.send(embed=views.profile_embed(res.profile, res.record))

    # Keep the digit role current whenever the profile is looked at
    if isinstance(inter.user, discord.Member) and config.DIGIT_ROLES:
        roles = await service.rank_role(inter.user.id, [r.id for r in inter.user.roles])
        if roles.ok:
            await _sync_digit_role(inter.user, roles)


@tree.command(name="rankrole", description="Refresh your osu! digit role (2D-7D)")
async def rankrole(inter: discord.Interaction):
    if not isinstance(inter.user, discord.Member):
        return await inter.response.send_message("❌ Use this in a server.", ephemeral=True)
    await inter.response.defer(ephemeral=True)
    res = await service.rank_role(inter.user.id, [r.id for r in inter.user.roles])
    if not res.ok:
        return await inter.followup.send(reason_text(res), ephemeral=True)
    if not await _sync_digit_role(inter.user, res):
        return await inter.followup.send(
            "❌ Failed to update your role. Make sure the bot has **Manage Roles** "
            "and its role is above the digit roles.",
            ephemeral=True,
        )
    await inter.followup.send(fmt.rank_role_updated(res.profile.global_rank), ephemeral=True)


# --- Entrypoint ---
if __name__ == "__main__":
    if not config.TOKEN:
        log.error("DISCORD_TOKEN not set. Put it in environment or .env")
        raise SystemExit(1)
    bot.run(config.TOKEN, log_handler=None)
