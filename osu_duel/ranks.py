"""
Digit rank roles: a player's osu! global rank decides which one of the
2D..7D roles they hold (#1-#99 is 2D, #100-#999 is 3D, and so on; anything
past seven digits stays 7D).
"""

from __future__ import annotations

from typing import Iterable, Optional

MIN_DIGITS = 2
MAX_DIGITS = 7


def rank_digits(rank: Optional[int]) -> Optional[int]:
    if not rank or rank < 1:
        return None
    return min(max(len(str(rank)), MIN_DIGITS), MAX_DIGITS)


def pick_digit_role(rank: Optional[int], roles: dict[int, int]) -> Optional[int]:
    """Role id configured for ``rank``'s digit count, if any."""
    digits = rank_digits(rank)
    return roles.get(digits) if digits else None


def role_changes(rank: Optional[int], roles: dict[int, int], held: Iterable[int]) -> tuple[Optional[int], list[int]]:
    """``(role_to_add, roles_to_remove)`` that leave exactly the right digit role.

    ``role_to_add`` is None when the member already holds it.
    """
    target = pick_digit_role(rank, roles)
    held = set(held)
    remove = sorted(r for r in set(roles.values()) if r != target and r in held)
    add = target if target is not None and target not in held else None
    return add, remove
