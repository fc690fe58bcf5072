"""
DuelRank update rule.

Flat rating transfer: the winner gains ``delta`` points, the loser drops the
same amount. There is no floor or ceiling, so ratings can go negative.
"""

from dataclasses import replace

from .models import RatingRecord

DEFAULT_DELTA = 25


def apply_result(
    winner: RatingRecord,
    loser: RatingRecord,
    delta: int = DEFAULT_DELTA,
) -> tuple[RatingRecord, RatingRecord]:
    """
    Apply one finished match to both players' records.

    Args:
        winner: Current record of the match winner
        loser: Current record of the match loser
        delta: Rating points moved from loser to winner

    Returns:
        Tuple of (new_winner_record, new_loser_record); inputs are not modified.
    """
    if winner.user_id == loser.user_id:
        raise ValueError("Winner and loser must be different players")

    new_w = replace(
        winner,
        rating=winner.rating + delta,
        wins=winner.wins + 1,
        games=winner.games + 1,
        winstreak=winner.winstreak + 1,
        losestreak=0,
    )
    new_l = replace(
        loser,
        rating=loser.rating - delta,
        losses=loser.losses + 1,
        games=loser.games + 1,
        losestreak=loser.losestreak + 1,
        winstreak=0,
    )
    return new_w, new_l
