"""
DuelService end to end over an aiosqlite file and in-memory chat/catalog fakes.
"""

import asyncio

from conftest import FakeAccounts, FakeChat
from osu_duel import db
from osu_duel.models import DraftAction, OsuProfile, Outcome, Phase, Side, Slot
from osu_duel.rules import ReportStatus

X, Y = 1, 2


async def start_duel(service, starter=None):
    await service.enqueue(X)
    await service.enqueue(Y)
    res = await service.create_pairing_if_possible(guild_id=77)
    duel = res.duel
    if starter is not None and duel.starter_id != starter:
        duel.starter_id = starter
        await db.save_duel(duel)
    return duel


async def draft_through(service, duel):
    """X (starter) bans HR1, Y bans DT1, X picks NM1, Y picks HD1."""
    for uid, action, slot in (
        (X, DraftAction.BAN, Slot.HR1),
        (Y, DraftAction.BAN, Slot.DT1),
        (X, DraftAction.PICK, Slot.NM1),
        (Y, DraftAction.PICK, Slot.HD1),
    ):
        res = await service.apply_draft_action(duel.id, uid, action, slot)
        assert res.ok, res.reason
    return res


async def play(service, duel, slot, winner, loser):
    await service.apply_report(duel.id, winner, slot, Outcome.WIN)
    return await service.apply_report(duel.id, loser, slot, Outcome.LOSE)


async def test_queue_results(make_service):
    service = make_service()
    assert (await service.enqueue(X)).size == 1
    res = await service.enqueue(X)
    assert not res.ok and res.reason == "already_queued"
    assert (await service.queue_status()).users == [X]
    assert (await service.dequeue(X)).size == 0
    res = await service.dequeue(X)
    assert not res.ok and res.reason == "not_in_queue"


async def test_no_pairing_with_one_player(make_service):
    service = make_service()
    await service.enqueue(X)
    res = await service.create_pairing_if_possible(guild_id=77)
    assert res.ok and res.duel is None


async def test_full_match_updates_ratings_and_cleans_up(make_service):
    chat = FakeChat()
    service = make_service(chat=chat)
    duel = await start_duel(service, starter=X)
    assert chat.names()[:3] == ["create_duel_channel", "send_intro", "send_pool"]

    res = await draft_through(service, duel)
    assert res.phase is Phase.PLAYING
    assert ("announce_map", (Slot.NM1,)) in chat.events

    res = await play(service, duel, Slot.NM1, X, Y)
    assert res.status is ReportStatus.CONFIRMED and not res.finished
    res = await play(service, duel, Slot.HD1, Y, X)
    assert (await db.get_duel(duel.id)).score_line == "1-1"
    assert ("announce_map", (Slot.TB,)) in chat.events

    res = await play(service, duel, Slot.TB, X, Y)
    assert res.finished
    assert res.duel.score_line == "2-1"

    await service.wait_for_cleanups()
    assert await db.get_duel(duel.id) is None
    x, y = await db.get_rating(X), await db.get_rating(Y)
    assert (x.rating, x.winstreak, x.wins) == (25, 1, 1)
    assert (y.rating, y.losestreak, y.losses) == (-25, 1, 1)

    assert chat.names()[-5:] == [
        "announce_confirmed", "announce_finish", "lock_channel", "announce_cleanup", "delete_channel",
    ]
    assert chat.names().count("announce_map") == 3


async def test_rejections_carry_reason_codes(make_service):
    service = make_service()
    duel = await start_duel(service, starter=X)

    res = await service.apply_draft_action(duel.id, Y, DraftAction.BAN, Slot.NM1)
    assert (res.ok, res.reason) == (False, "wrong_turn")
    res = await service.apply_draft_action(duel.id, X, DraftAction.BAN, Slot.TB)
    assert res.reason == "invalid_slot"
    res = await service.apply_draft_action(duel.id, X, DraftAction.PICK, Slot.NM1)
    assert res.reason == "wrong_phase"
    res = await service.apply_draft_action(duel.id, 99, DraftAction.BAN, Slot.NM1)
    assert res.reason == "not_player"
    res = await service.apply_draft_action(duel.id + 100, X, DraftAction.BAN, Slot.NM1)
    assert res.reason == "no_duel"
    res = await service.apply_report(duel.id, X, Slot.NM1, Outcome.WIN)
    assert res.reason == "not_reportable"

    assert (await db.get_duel(duel.id)).to_dict() == duel.to_dict()


async def test_inactive_slot_report_is_rejected(make_service):
    service = make_service()
    duel = await start_duel(service, starter=X)
    await draft_through(service, duel)
    res = await service.apply_report(duel.id, X, Slot.HD1, Outcome.WIN)
    assert res.reason == "slot_not_active"


async def test_dispute_then_arbitration(make_service):
    chat = FakeChat()
    service = make_service(chat=chat)
    duel = await start_duel(service, starter=X)
    await draft_through(service, duel)

    await service.apply_report(duel.id, X, Slot.NM1, Outcome.WIN)
    res = await service.apply_report(duel.id, Y, Slot.NM1, Outcome.WIN)
    assert res.status is ReportStatus.DISPUTED
    stored = await db.get_duel(duel.id)
    assert stored.phase is Phase.DISPUTE
    assert stored.score_line == "0-0"
    assert ("announce_dispute", (Slot.NM1,)) in chat.events

    res = await service.arbitrate(duel.channel_id, 99)
    assert res.reason == "winner_not_player"
    res = await service.arbitrate(duel.channel_id + 1, X)
    assert res.reason == "no_duel"

    res = await service.arbitrate(duel.channel_id, X)
    assert res.ok
    stored = await db.get_duel(duel.id)
    assert stored.phase is Phase.PLAYING
    assert stored.score == {Side.A: 1, Side.B: 0}
    assert ("announce_resolved", (Slot.NM1, X)) in chat.events
    assert chat.events[-1] == ("announce_map", (Slot.HD1,))


async def test_arbitration_needs_active_map(make_service):
    service = make_service()
    duel = await start_duel(service)
    res = await service.arbitrate(duel.channel_id, X)
    assert res.reason == "no_active_map"


async def test_arbitration_can_finish_the_match(make_service):
    chat = FakeChat()
    service = make_service(chat=chat)
    duel = await start_duel(service, starter=X)
    await draft_through(service, duel)
    await service.arbitrate(duel.channel_id, Y)
    res = await service.arbitrate(duel.channel_id, Y)
    assert res.finished
    await service.wait_for_cleanups()
    assert (await db.get_rating(Y)).rating == 25
    assert "announce_finish" in chat.names()
    assert (await service.arbitrate(duel.channel_id, Y)).reason == "no_duel"


async def test_chat_failures_do_not_undo_commits(make_service):
    chat = FakeChat(failing={
        "send_intro", "send_pool", "send_draft_action", "announce_map", "announce_confirmed",
        "announce_finish", "lock_channel", "announce_cleanup", "delete_channel",
    })
    service = make_service(chat=chat)
    duel = await start_duel(service, starter=X)
    await draft_through(service, duel)
    await play(service, duel, Slot.NM1, X, Y)
    res = await play(service, duel, Slot.HD1, X, Y)

    assert res.ok and res.finished
    await service.wait_for_cleanups()
    assert (await db.get_rating(X)).rating == 25
    assert await db.get_duel(duel.id) is None
    assert "delete_channel" in chat.names()


async def test_cleanup_skips_channel_with_live_duel(make_service):
    release = asyncio.Event()

    async def held_sleep(_seconds):
        await release.wait()

    chat = FakeChat()
    service = make_service(chat=chat, sleep=held_sleep)
    duel = await start_duel(service, starter=X)
    await draft_through(service, duel)
    await play(service, duel, Slot.NM1, X, Y)
    await play(service, duel, Slot.HD1, X, Y)

    duel.id = 999
    duel.phase = Phase.BAN_A
    await db.save_duel(duel)

    release.set()
    await service.wait_for_cleanups()
    assert "delete_channel" not in chat.names()


async def test_simultaneous_reports_commit_once(make_service):
    service = make_service()
    duel = await start_duel(service, starter=X)
    await draft_through(service, duel)

    results = await asyncio.gather(
        service.apply_report(duel.id, X, Slot.NM1, Outcome.WIN),
        service.apply_report(duel.id, Y, Slot.NM1, Outcome.LOSE),
    )
    statuses = sorted(r.status.value for r in results)
    assert statuses == ["confirmed", "pending"]
    assert (await db.get_duel(duel.id)).score == {Side.A: 1, Side.B: 0}


async def test_simultaneous_bans_serialise(make_service):
    service = make_service()
    duel = await start_duel(service, starter=X)
    results = await asyncio.gather(
        service.apply_draft_action(duel.id, X, DraftAction.BAN, Slot.NM1),
        service.apply_draft_action(duel.id, X, DraftAction.BAN, Slot.HD1),
    )
    assert sorted((r.ok, r.reason) for r in results) == [(False, "wrong_turn"), (True, None)]
    stored = await db.get_duel(duel.id)
    assert stored.phase is Phase.BAN_B
    assert len(stored.bans[Side.A]) == 1


async def test_stats_and_random_map(make_service):
    service = make_service(accounts=FakeAccounts(linked={X, Y}, broken=True))
    res = await service.stats(X)
    assert res.ok and res.record.rating == 0

    res = await service.random_map(X)
    assert res.ok
    assert 4.5 <= res.random_map.beatmap.stars <= 6.5

    res = await service.random_map(X, min_stars=10.0, max_stars=11.0)
    assert not res.ok and res.reason == "no_map_found"


async def test_failed_pairing_returns_reason_and_keeps_queue(make_service):
    service = make_service(chat=FakeChat(failing={"create_duel_channel"}))
    await service.enqueue(X)
    await service.enqueue(Y)
    res = await service.create_pairing_if_possible(guild_id=77)
    assert (res.ok, res.reason, res.duel) == (False, "pairing_failed", None)
    assert (await service.queue_status()).users == [X, Y]


async def test_clicks_on_missing_duels_leave_no_lock_behind(make_service):
    service = make_service()
    res = await service.apply_draft_action(404, X, DraftAction.BAN, Slot.NM1)
    assert res.reason == "no_duel"
    res = await service.apply_report(405, X, Slot.NM1, Outcome.WIN)
    assert res.reason == "no_duel"
    assert service._duel_locks == {}

    duel = await start_duel(service, starter=X)
    await draft_through(service, duel)
    await play(service, duel, Slot.NM1, X, Y)
    await play(service, duel, Slot.HD1, X, Y)
    res = await service.apply_report(duel.id, X, Slot.TB, Outcome.WIN)
    assert res.reason == "no_duel"
    assert duel.id not in service._duel_locks


async def test_profile_includes_duel_record(make_service):
    service = make_service(accounts=FakeAccounts(
        linked={X}, profiles={X: OsuProfile(900, "cookiezi", global_rank=1234)},
    ))
    res = await service.profile(X)
    assert res.ok
    assert res.profile.username == "cookiezi"
    assert res.record.rating == 0

    assert (await service.profile(Y)).reason == "not_linked"
    broken = make_service(accounts=FakeAccounts(linked={X}, broken=True))
    assert (await broken.profile(X)).reason == "osu_unavailable"


async def test_rank_role_swaps_digit_roles(make_service):
    roles = {2: 902, 3: 903, 4: 904, 5: 905, 6: 906, 7: 907}
    service = make_service(
        accounts=FakeAccounts(linked={X, Y}, profiles={
            X: OsuProfile(900, "mid", global_rank=4321),
            Y: OsuProfile(901, "unranked"),
        }),
        digit_roles=roles,
    )
    res = await service.rank_role(X, held_role_ids=[903, 905, 12345])
    assert res.ok
    assert res.role_add == 904
    assert res.role_remove == [903, 905]

    res = await service.rank_role(X, held_role_ids=[904])
    assert (res.role_add, res.role_remove) == (None, [])

    assert (await service.rank_role(Y)).reason == "no_rank"
    assert (await service.rank_role(3)).reason == "not_linked"


async def test_rank_role_without_configured_role(make_service):
    service = make_service(
        accounts=FakeAccounts(linked={X}, profiles={X: OsuProfile(900, "top", global_rank=42)}),
        digit_roles={3: 903},
    )
    assert (await service.rank_role(X)).reason == "no_role_match"
