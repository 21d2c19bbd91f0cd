"""Board composition: rarity quotas, unique selection and featured boosts."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Set

from .models import (
    MIN_DROP_WEIGHT,
    RARITIES_ASCENDING,
    CharacterSnapshot,
    Rarity,
)

logger = logging.getLogger("gachabot.board")

FEATURED_RARITIES = (Rarity.EPIC, Rarity.LEGENDARY, Rarity.MYTHIC)


def create_rarity_plan(size: int) -> Dict[Rarity, int]:
    """Slot quota per rarity for a board of ``size`` entries."""
    board_size = max(0, int(size or 0))
    if board_size >= 30:
        legendary = 3
    elif board_size >= 20:
        legendary = 2
    elif board_size >= 10:
        legendary = 1
    else:
        legendary = 0
    plan: Dict[Rarity, int] = {
        Rarity.COMMON: 0,
        Rarity.RARE: 0,
        Rarity.EPIC: 0,
        Rarity.LEGENDARY: legendary,
        Rarity.MYTHIC: 1 if board_size > 0 else 0,
    }

    remaining = max(0, board_size - plan[Rarity.LEGENDARY] - plan[Rarity.MYTHIC])
    plan[Rarity.EPIC] = int(remaining * 0.22)
    plan[Rarity.RARE] = int(remaining * 0.3)
    plan[Rarity.COMMON] = max(0, remaining - plan[Rarity.EPIC] - plan[Rarity.RARE])

    if board_size >= 20 and plan[Rarity.EPIC] == 0 and plan[Rarity.COMMON] > 0:
        plan[Rarity.EPIC] = 1
        plan[Rarity.COMMON] -= 1
    if board_size >= 12 and plan[Rarity.RARE] == 0 and plan[Rarity.COMMON] > 0:
        plan[Rarity.RARE] = 1
        plan[Rarity.COMMON] -= 1

    shortfall = board_size - sum(plan.values())
    if shortfall > 0:
        plan[Rarity.COMMON] += shortfall
    return plan


def board_sort_key(character: CharacterSnapshot):
    """Canonical display order: rarest first, then lighter weight, more favorites, name."""
    return (-character.rarity.rank, character.drop_weight, -character.favorites, character.name.lower())


def sort_board(characters: Sequence[CharacterSnapshot]) -> List[CharacterSnapshot]:
    return sorted(characters, key=board_sort_key)


class _BoardBuilder:
    def __init__(self, size: int, mythic_cap: int) -> None:
        self.size = size
        self.mythic_cap = mythic_cap
        self.selected: List[CharacterSnapshot] = []
        self.used_ids: Set[str] = set()
        self.mythic_count = 0

    @property
    def full(self) -> bool:
        return len(self.selected) >= self.size

    def add(self, character: CharacterSnapshot) -> bool:
        if not character.id or character.id in self.used_ids:
            return False
        if character.rarity is Rarity.MYTHIC and self.mythic_count >= self.mythic_cap:
            return False
        self.used_ids.add(character.id)
        self.selected.append(character)
        if character.rarity is Rarity.MYTHIC:
            self.mythic_count += 1
        return True

    def unused(self, candidates: Sequence[CharacterSnapshot]) -> List[CharacterSnapshot]:
        return [character for character in candidates if character.id not in self.used_ids]


def compose_board(
    catalog: Sequence[CharacterSnapshot],
    size: int,
    *,
    rng: Optional[random.Random] = None,
) -> List[CharacterSnapshot]:
    """Pick up to ``size`` unique characters following the rarity quota plan.

    Duplicate ids in ``catalog`` are only counted once and the board never
    holds more mythics than the plan's mythic quota, even when that leaves it
    short. The result is sorted with :func:`board_sort_key`.
    """
    rng = rng or random
    distinct: Dict[str, CharacterSnapshot] = {}
    for character in catalog:
        if character.id and character.id not in distinct:
            distinct[character.id] = character
    pool = list(distinct.values())

    board_size = min(max(0, int(size or 0)), len(pool))
    plan = create_rarity_plan(board_size)
    builder = _BoardBuilder(board_size, mythic_cap=plan[Rarity.MYTHIC])

    by_rarity: Dict[Rarity, List[CharacterSnapshot]] = {rarity: [] for rarity in RARITIES_ASCENDING}
    for character in pool:
        by_rarity[character.rarity].append(character)

    for rarity in reversed(RARITIES_ASCENDING):
        quota = plan[rarity]
        if quota <= 0:
            continue
        candidates = builder.unused(by_rarity[rarity])
        for character in rng.sample(candidates, min(quota, len(candidates))):
            builder.add(character)

    if not builder.full:
        for rarity in RARITIES_ASCENDING:
            if builder.full:
                break
            leftovers = builder.unused(by_rarity[rarity])
            rng.shuffle(leftovers)
            for character in leftovers:
                if builder.full:
                    break
                builder.add(character)

    if not builder.full:
        leftovers = builder.unused(pool)
        rng.shuffle(leftovers)
        for character in leftovers:
            if builder.full:
                break
            builder.add(character)

    return sort_board(builder.selected)


def apply_featured_boost(
    board: Sequence[CharacterSnapshot],
    boost_percent: float,
    *,
    rng: Optional[random.Random] = None,
) -> List[CharacterSnapshot]:
    """Flag one random member of each featured rarity and raise its drop weight."""
    rng = rng or random
    multiplier = 1 + max(0.0, float(boost_percent or 0)) / 100
    result = [character.replace(featured=False, featured_rarity=None) for character in board]

    for rarity in FEATURED_RARITIES:
        indexes = [index for index, character in enumerate(result) if character.rarity is rarity]
        if not indexes:
            continue
        picked_index = rng.choice(indexes)
        picked = result[picked_index]
        weight = max(MIN_DROP_WEIGHT, round((picked.drop_weight or 1.0) * multiplier, 4))
        result[picked_index] = picked.replace(drop_weight=weight, featured=True, featured_rarity=rarity)
        logger.debug("Featured %s %s at weight %.4f", rarity.value, picked.id, weight)
    return result


def build_board_snapshot(
    catalog: Sequence[CharacterSnapshot],
    size: int,
    boost_percent: float,
    *,
    rng: Optional[random.Random] = None,
) -> List[CharacterSnapshot]:
    composed = compose_board(catalog, size, rng=rng)
    return apply_featured_boost(composed, boost_percent, rng=rng)


def time_remaining(updated_at: Optional[datetime], refresh_interval: timedelta, now: datetime) -> timedelta:
    if updated_at is None:
        return timedelta(0)
    return max(timedelta(0), refresh_interval - (now - updated_at))


def is_fresh(updated_at: Optional[datetime], refresh_interval: timedelta, now: datetime) -> bool:
    return time_remaining(updated_at, refresh_interval, now) > timedelta(0)


@dataclass(frozen=True)
class PrefetchedBoard:
    """A board built ahead of time, valid only while its base board is current."""

    base_updated_at: Optional[datetime]
    characters: tuple
    prefetched_at: datetime

    def matches(self, board_updated_at: Optional[datetime]) -> bool:
        return bool(self.characters) and self.base_updated_at == board_updated_at


__all__ = [
    "FEATURED_RARITIES",
    "PrefetchedBoard",
    "apply_featured_boost",
    "board_sort_key",
    "build_board_snapshot",
    "compose_board",
    "create_rarity_plan",
    "is_fresh",
    "sort_board",
    "time_remaining",
]
