"""Weighted drawing with soft and hard mythic pity."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import List, Optional, Sequence, TypeVar

from .models import MIN_DROP_WEIGHT, CharacterSnapshot, Rarity

logger = logging.getLogger("gachabot.rolls")

MAX_BOOSTED_CHANCE = 0.99

T = TypeVar("T")


@dataclass(frozen=True)
class PityRules:
    soft_threshold: int
    hard_threshold: int
    soft_step_percent: float

    @classmethod
    def build(cls, soft_threshold: int, hard_threshold: int, soft_step_percent: float) -> "PityRules":
        soft = max(1, int(soft_threshold or 1))
        hard = max(soft, int(hard_threshold or soft))
        return cls(soft_threshold=soft, hard_threshold=hard, soft_step_percent=max(0.0, float(soft_step_percent or 0)))

    @property
    def hard_trigger_at(self) -> int:
        return max(0, self.hard_threshold - 1)

    def clamp_counter(self, counter: int) -> int:
        return min(self.hard_trigger_at, max(0, int(counter or 0)))


@dataclass(frozen=True)
class DrawOutcome:
    character: CharacterSnapshot
    hard_pity: bool
    soft_bonus_percent: float
    pity_before: int
    pity_after: int

    @property
    def soft_pity(self) -> bool:
        return self.soft_bonus_percent > 0


def soft_pity_bonus_percent(counter: int, soft_threshold: int, step_percent: float) -> float:
    """Extra mythic chance, in percentage points, for a roll made at ``counter``."""
    safe_counter = max(0, int(counter or 0))
    first_soft_counter = max(1, int(soft_threshold or 1)) - 1
    step = max(0.0, float(step_percent or 0))
    if safe_counter < first_soft_counter or step <= 0:
        return 0.0
    return (safe_counter - first_soft_counter + 1) * step


def chance_of(weights: Sequence[float], mask: Sequence[bool]) -> float:
    total = 0.0
    target = 0.0
    for weight, selected in zip(weights, mask):
        weight = max(0.0, weight)
        total += weight
        if selected:
            target += weight
    if total <= 0 or target <= 0:
        return 0.0
    return target / total


def boost_subset_chance(weights: Sequence[float], mask: Sequence[bool], bonus_percent: float) -> List[float]:
    """Rescale the masked weights so their combined chance rises by ``bonus_percent`` points.

    The target chance is capped at 99%; unmasked weights are returned unchanged.
    """
    result = list(weights)
    bonus = max(0.0, float(bonus_percent or 0)) / 100
    if not result or bonus <= 0:
        return result
    current = chance_of(result, mask)
    if current <= 0:
        return result
    target = min(MAX_BOOSTED_CHANCE, current + bonus)
    if target <= current:
        return result
    # Solving m*t / (m*t + r) = target for m, with t the masked mass and r the rest.
    total = sum(max(0.0, weight) for weight in result)
    masked = current * total
    rest = total - masked
    if rest <= 0:
        return result
    multiplier = (target * rest) / ((1 - target) * masked)
    for index, selected in enumerate(mask):
        if selected:
            result[index] = max(0.0, result[index]) * multiplier
    return result


def weighted_pick(items: Sequence[T], weights: Sequence[float], rng: Optional[random.Random] = None) -> T:
    """Roulette-wheel selection; falls back to a uniform pick when all weights are zero."""
    if not items:
        raise ValueError("weighted_pick() requires at least one item")
    rng = rng or random
    safe_weights = [max(0.0, weight) for weight in weights]
    total = sum(safe_weights)
    if total <= 0:
        return rng.choice(list(items))
    pick = rng.uniform(0, total)
    cumulative = 0.0
    for item, weight in zip(items, safe_weights):
        cumulative += weight
        if pick <= cumulative:
            return item
    return items[-1]


def draw(
    board: Sequence[CharacterSnapshot],
    pity_counter: int,
    rules: PityRules,
    *,
    rng: Optional[random.Random] = None,
) -> DrawOutcome:
    """Draw one character from ``board`` given the user's current pity counter."""
    if not board:
        raise ValueError("Cannot draw from an empty board")
    before = max(0, int(pity_counter or 0))
    mythics = [character for character in board if character.rarity is Rarity.MYTHIC]
    hard = before >= rules.hard_trigger_at and bool(mythics)

    bonus = 0.0
    if hard:
        character = weighted_pick(mythics, [c.drop_weight or 1.0 for c in mythics], rng)
    else:
        bonus = soft_pity_bonus_percent(before, rules.soft_threshold, rules.soft_step_percent)
        weights = [max(MIN_DROP_WEIGHT, c.drop_weight or 1.0) for c in board]
        if bonus > 0:
            mask = [c.rarity is Rarity.MYTHIC for c in board]
            weights = boost_subset_chance(weights, mask, bonus)
        character = weighted_pick(board, weights, rng)

    after = advance_pity(before, character, rules)
    return DrawOutcome(
        character=character,
        hard_pity=hard,
        soft_bonus_percent=bonus,
        pity_before=before,
        pity_after=after,
    )


def advance_pity(counter: int, character: CharacterSnapshot, rules: PityRules) -> int:
    if character.rarity is Rarity.MYTHIC:
        return 0
    return rules.clamp_counter(counter + 1)


__all__ = [
    "DrawOutcome",
    "MAX_BOOSTED_CHANCE",
    "PityRules",
    "advance_pity",
    "boost_subset_chance",
    "chance_of",
    "draw",
    "soft_pity_bonus_percent",
    "weighted_pick",
]
