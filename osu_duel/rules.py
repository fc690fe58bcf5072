"""
Draft and result rules for a BO3 duel.

Every function here works on a loaded ``Duel`` snapshot: it validates first and
only mutates once every check passed, so a raised ``DuelError`` always leaves
the snapshot untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .models import Duel, DraftAction, Outcome, Phase, Pick, Side, Slot, TIEBREAK

WINS_NEEDED = 2

_FORWARD = {
    Phase.BAN_A: Phase.BAN_B,
    Phase.BAN_B: Phase.PICK_A,
    Phase.PICK_A: Phase.PICK_B,
    Phase.PICK_B: Phase.PLAYING,
}

BAN_PHASES = (Phase.BAN_A, Phase.BAN_B)
PICK_PHASES = (Phase.PICK_A, Phase.PICK_B)
REPORT_PHASES = (Phase.PLAYING, Phase.DISPUTE)


# --- Errors ---

class DuelError(ValueError):
    """A rejected action. ``reason`` is the machine-readable code shown to callers."""
    reason = "error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.reason)


class AlreadyQueued(DuelError):
    reason = "already_queued"


class NotQueued(DuelError):
    reason = "not_in_queue"


class NoDuel(DuelError):
    reason = "no_duel"


class NotPlayer(DuelError):
    reason = "not_player"


class WrongPhase(DuelError):
    reason = "wrong_phase"


class NotYourTurn(DuelError):
    reason = "wrong_turn"


class InvalidSlot(DuelError):
    reason = "invalid_slot"


class NotReportable(DuelError):
    reason = "not_reportable"


class SlotNotActive(DuelError):
    reason = "slot_not_active"


class WinnerNotPlayer(DuelError):
    reason = "winner_not_player"


class NoActiveMap(DuelError):
    reason = "no_active_map"


class PairingFailed(DuelError):
    reason = "pairing_failed"


class NotLinked(DuelError):
    reason = "not_linked"


class OsuUnavailable(DuelError):
    reason = "osu_unavailable"


class NoRank(DuelError):
    reason = "no_rank"


class NoRoleMatch(DuelError):
    reason = "no_role_match"


# --- Turn order ---

def next_phase(phase: Phase) -> Phase:
    """Next draft phase; phases outside the draft map to themselves."""
    return _FORWARD.get(phase, phase)


def turn_side(duel: Duel) -> Optional[Side]:
    """Side that acts in the current draft phase, or None outside the draft.

    The starter bans and picks first; the other side answers each time.
    """
    if duel.phase in (Phase.BAN_A, Phase.PICK_A):
        return duel.starter_side
    if duel.phase in (Phase.BAN_B, Phase.PICK_B):
        return duel.starter_side.other
    return None


def expected_slot(duel: Duel) -> Optional[Slot]:
    """The slot being played right now, derived from picks and score only.

    0-0 -> first pick, one map played -> second pick, 1-1 -> tiebreak,
    anything else -> no active slot.
    """
    a, b = duel.score[Side.A], duel.score[Side.B]
    played = a + b
    if played == 0:
        return duel.picks[0].slot if len(duel.picks) > 0 else None
    if played == 1:
        return duel.picks[1].slot if len(duel.picks) > 1 else None
    if played == 2 and a == 1 and b == 1:
        return TIEBREAK
    return None


def match_winner(duel: Duel) -> Optional[Side]:
    for side in (Side.A, Side.B):
        if duel.score[side] >= WINS_NEEDED:
            return side
    return None


# --- Draft ---

def _check_draft(duel: Duel, side: Side, slot: Slot, phases: tuple[Phase, ...]) -> None:
    if duel.phase not in phases:
        raise WrongPhase(f"{duel.phase.value} does not accept this action")
    if turn_side(duel) is not side:
        raise NotYourTurn()
    if slot is TIEBREAK:
        raise InvalidSlot("TB cannot be banned or picked")
    if slot in duel.banned():
        raise InvalidSlot(f"{slot.value} is already banned")
    if slot in duel.picked():
        raise InvalidSlot(f"{slot.value} is already picked")


def ban(duel: Duel, side: Side, slot: Slot) -> Phase:
    _check_draft(duel, side, slot, BAN_PHASES)
    duel.bans[side].append(slot)
    duel.phase = next_phase(duel.phase)
    return duel.phase


def pick(duel: Duel, side: Side, slot: Slot) -> Phase:
    _check_draft(duel, side, slot, PICK_PHASES)
    duel.picks.append(Pick(slot=slot, chosen_by=side))
    duel.phase = next_phase(duel.phase)
    return duel.phase


def draft(duel: Duel, side: Side, action: DraftAction, slot: Slot) -> Phase:
    """Apply a ban or pick and return the phase the duel moved to."""
    if action is DraftAction.BAN:
        return ban(duel, side, slot)
    return pick(duel, side, slot)


# --- Results ---

class ReportStatus(str, Enum):
    PENDING = "pending"       # waiting for the other side
    CONFIRMED = "confirmed"   # both sides agree on one winner
    DISPUTED = "disputed"     # incompatible claims, needs arbitration


@dataclass
class ReportResult:
    status: ReportStatus
    slot: Slot
    winner: Optional[Side] = None
    finished: bool = False


def _commit(duel: Duel, slot: Slot, winner: Side) -> ReportResult:
    duel.score[winner] += 1
    duel.phase = Phase.PLAYING
    if match_winner(duel) is not None:
        duel.phase = Phase.FINISHED
    return ReportResult(ReportStatus.CONFIRMED, slot, winner, duel.phase is Phase.FINISHED)


def report(duel: Duel, side: Side, slot: Slot, outcome: Outcome) -> ReportResult:
    """Record one side's claim for the active slot and settle it if both sides spoke.

    A later claim from the same side overwrites the earlier one, so a disputed
    map can still be settled by the players themselves.
    """
    if duel.phase not in REPORT_PHASES:
        raise NotReportable()
    active = expected_slot(duel)
    if active is None or slot is not active:
        raise SlotNotActive(f"{slot.value} is not the active map")

    entry = duel.reports.setdefault(slot, {Side.A: None, Side.B: None})
    entry[side] = outcome

    claim_a, claim_b = entry.get(Side.A), entry.get(Side.B)
    if claim_a is None or claim_b is None:
        return ReportResult(ReportStatus.PENDING, slot)

    if {claim_a, claim_b} == {Outcome.WIN, Outcome.LOSE}:
        winner = Side.A if claim_a is Outcome.WIN else Side.B
        return _commit(duel, slot, winner)

    duel.phase = Phase.DISPUTE
    return ReportResult(ReportStatus.DISPUTED, slot)


def resolve(duel: Duel, winner: Side) -> ReportResult:
    """Privileged override: award the active slot to ``winner``.

    Authority is checked by the caller; this only needs an active slot.
    """
    slot = expected_slot(duel)
    if slot is None or duel.phase not in REPORT_PHASES:
        raise NoActiveMap()
    duel.reports[slot] = {winner: Outcome.WIN, winner.other: Outcome.LOSE}
    return _commit(duel, slot, winner)
