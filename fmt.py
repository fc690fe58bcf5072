import time
from typing import Iterable, Optional

import discord

from osu_duel.models import TIEBREAK, Beatmap, Duel, MapSlot, OsuProfile, RatingRecord, StarRange, TopPlay
from osu_duel.pool import RandomMap


def bold(t: str) -> str:
	return f"**{t}**"


def block(t: str, lang: str | None = None) -> str:
	return f"```{lang or ''}\n{t}\n```"


def mention(uid: int) -> str:
	return f"<@{uid}>"


def role_mention(role_id: int | None) -> str:
	return f"<@&{role_id}>" if role_id else bold("Support")


def stars(sr: float | None) -> str:
	return f"{sr:.2f}★" if isinstance(sr, (int, float)) else "?"


def star_window(r: StarRange) -> str:
	return f"{r.min:.2f}–{r.max:.2f}★"


def map_line(bm: Optional[Beatmap]) -> str:
	"""One-line map description; ``-`` for an empty slot."""
	if bm is None:
		return "-"
	return f"{bm.name} ({stars(bm.stars)})"


def slot_status(duel: Duel, entry: MapSlot) -> str:
	if entry.slot in duel.banned():
		return "❌ BANNED"
	if entry.slot in duel.picked():
		return "✅ PICKED"
	if entry.slot is TIEBREAK:
		return "⭐ TB"
	return "open"


def pool_lines(duel: Duel) -> list[str]:
	lines = []
	for entry in duel.pool:
		bm = entry.map
		head = f"{entry.slot.value} {bold('(' + entry.mod + ')')} | {stars(bm.stars) if bm else '-'} | {slot_status(duel, entry)}"
		url = bm.url if bm else ""
		lines.append("\n".join(x for x in (head, url, bm.name if bm else "-") if x))
	return lines


def intro(duel: Duel) -> str:
	return (
		f"🎮 {bold('Duel Found!')}\n"
		f"Players: {mention(duel.a)} vs {mention(duel.b)}\n"
		f"Room: {bold(duel.room_name)} | Password: {bold(duel.password)}\n"
		f"Starter (random): {mention(duel.starter_id)}\n"
		f"Range: {bold(star_window(duel.star_range))} ({duel.star_range.note})\n\n"
		f"{bold('Ban & Pick Rules (BO3):')}\n"
		"• Starter bans 1, then the other player bans 1.\n"
		"• Starter picks Map 1, the other player picks Map 2.\n"
		f"• If 1–1, play {bold('TB')}.\n\n"
		"📸 Post screenshots as evidence here."
	)


def draft_action(user_id: int, action: str, slot: str) -> str:
	verb = "banned" if action == "BAN" else "picked"
	return f"✅ {mention(user_id)} {verb} {bold(slot)}"


def map_announcement(duel: Duel, entry: MapSlot) -> str:
	bm = entry.map
	parts = [f"🗺️ {bold('Next Map:')} {bold(entry.slot.value)} ({entry.mod})"]
	if bm is not None:
		parts += [bm.url, map_line(bm)]
	parts += ["", "📸 Post screenshot evidence here.", "After playing, BOTH players must report the result:"]
	return "\n".join(parts)


def confirmed(slot: str, winner_id: int) -> str:
	return f"✅ {bold('Result confirmed')} for {bold(slot)}. Winner: {mention(winner_id)}"


def dispute(duel: Duel, slot: str, support_role_id: int | None) -> str:
	return (
		f"⚠️ {bold('Conflict!')} The reports on {bold(slot)} do not agree.\n"
		f"{role_mention(support_role_id)} please decide using {bold('/resolve')}.\n"
		f"Players: {mention(duel.a)} {mention(duel.b)}"
	)


def resolved(duel: Duel, slot: str, winner_id: int) -> str:
	return f"🛡️ {bold('Support resolved')}: {mention(winner_id)} wins {bold(slot)}. Score: {bold(duel.score_line)}"


def finished(duel: Duel, winner: RatingRecord, loser: RatingRecord, delta: int) -> str:
	return (
		f"🏁 {bold('Match finished!')} Winner: {mention(winner.user_id)} | Loser: {mention(loser.user_id)}\n"
		f"Final score: {bold(duel.score_line)}\n\n"
		f"🏆 Winner DuelRank: {bold(winner.rating)} (+{delta}) | Streak: {bold(f'{winner.winstreak}W')}\n"
		f"💀 Loser DuelRank: {bold(loser.rating)} (-{delta}) | Streak: {bold(f'{loser.losestreak}L')}"
	)


def cleanup_notice(minutes: float) -> str:
	return f"🧹 This duel channel will auto-delete in {bold(f'{minutes:g}')} minute(s)."


def stats(name: str, r: RatingRecord) -> str:
	return (
		f"📊 {bold(name)}\n"
		f"DuelRank: {bold(r.rating)}\n"
		f"W/L: {bold(f'{r.wins}/{r.losses}')} ({r.games} games)\n"
		f"{r.streak_text}"
	)


def random_map(rm: RandomMap) -> str:
	bm = rm.beatmap
	mods = "+" + "".join(rm.mods) if rm.mods else "NM"
	lines = [
		f"🎲 {bold(map_line(bm))}",
		bm.url if bm else "",
		f"Mods: {bold(mods)} | Range: {star_window(rm.range)} ({rm.range.note})",
	]
	if bm is not None and bm.bpm:
		lines.append(f"BPM: {bm.bpm:g}")
	return "\n".join(x for x in lines if x)


# --- osu! profile ---
def number(n: float | int | None) -> str:
	return "-" if n is None else f"{n:,.0f}"


def rank(n: int | None) -> str:
	return bold(f"#{n:,}") if n else "-"


def top_plays(plays: list[TopPlay]) -> str:
	if not plays:
		return "No scores found."
	lines = []
	for i, p in enumerate(plays, start=1):
		pp = f"{p.pp:.0f}pp" if p.pp else "-"
		acc = f"{p.accuracy * 100:.2f}%" if p.accuracy else "-"
		mods = f" +{''.join(p.mods)}" if p.mods else ""
		lines.append(f"{bold(f'{i}.')} {pp} • {acc}{mods}\n{p.title}")
	return "\n\n".join(lines)[:1024]


def profile_fields(p: OsuProfile, r: RatingRecord) -> list[tuple[str, str]]:
	"""Inline embed fields for ``/profile``: osu! stats, then the duel record."""
	return [
		("PP", bold(number(p.pp))),
		("Global Rank", rank(p.global_rank)),
		("Country Rank", rank(p.country_rank)),
		("Accuracy", bold(f"{p.accuracy:.2f}%") if p.accuracy else "-"),
		("Level", bold(number(p.level)) if p.level else "-"),
		("Playcount", bold(number(p.play_count)) if p.play_count else "-"),
		("DuelRank", bold(r.rating)),
		("Duel Record", f"{bold(f'{r.wins}W / {r.losses}L')} ({r.games} games)\n{bold(r.streak_text)}"),
	]


def rank_role_updated(global_rank: int) -> str:
	return f"✅ Updated! Your global rank is {bold(f'#{global_rank:,}')}."


# --- Display names ---
_NAMES: dict[tuple[Optional[int], int], tuple[float, str]] = {}
NAME_TTL_SEC = 300.0
NAME_CACHE_MAX = 1000


def _prune_names(now: float) -> None:
	for key, (seen, _) in list(_NAMES.items()):
		if now - seen >= NAME_TTL_SEC:
			del _NAMES[key]
	overflow = len(_NAMES) - NAME_CACHE_MAX
	if overflow > 0:
		for key in sorted(_NAMES, key=lambda k: _NAMES[k][0])[:overflow]:
			del _NAMES[key]


async def display_name_or_cached(
	bot: "discord.Client",
	guild: Optional["discord.Guild"],
	user_id: int,
	fallback: Optional[str] = None,
) -> str:
	"""Guild nickname (or global name) for ``user_id``, cached for five minutes."""
	now = time.time()
	key = (getattr(guild, "id", None), user_id)
	hit = _NAMES.get(key)
	if hit and now - hit[0] < NAME_TTL_SEC:
		return hit[1]
	if len(_NAMES) >= NAME_CACHE_MAX:
		_prune_names(now)

	member = guild.get_member(user_id) if guild is not None else None
	name = member.display_name if member is not None else None
	if name is None:
		try:
			name = (await bot.fetch_user(user_id)).display_name
		except discord.HTTPException:
			name = fallback or f"User{user_id}"

	_NAMES[key] = (now, name)
	return name


def mono_table(rows: list[list[str]], headers: Optional[list[str]] = None) -> str:
	"""Render rows as a padded, monospaced Markdown code block."""
	norm_rows = [[str(c) for c in r] for r in rows]
	col_count = max([len(r) for r in norm_rows] + [len(headers or [])])

	def pad_row(r: Iterable[str]) -> list[str]:
		lst = list(r)
		return lst + [""] * (col_count - len(lst))

	all_rows = ([pad_row([str(h) for h in headers])] if headers else []) + [pad_row(r) for r in norm_rows]
	widths = [max((len(r[i]) for r in all_rows), default=0) for i in range(col_count)]

	def fmt_row(r: list[str]) -> str:
		return " | ".join(r[i].ljust(widths[i]) for i in range(col_count))

	lines = [fmt_row(r) for r in all_rows]
	if headers:
		lines.insert(1, "-+-".join("-" * w for w in widths))
	return block("\n".join(lines), "md")
