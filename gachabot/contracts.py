"""Contract resolution: trading duplicate copies up the rarity chain."""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .models import CharacterSnapshot, ContractRule, Rarity, UserRecord
from . import inventory

logger = logging.getLogger("gachabot.contracts")

CONTRACT_CHAIN: Tuple[Rarity, ...] = (
    Rarity.COMMON,
    Rarity.RARE,
    Rarity.EPIC,
    Rarity.LEGENDARY,
    Rarity.MYTHIC,
)
MANUAL_SELECTION_RARITIES = (Rarity.EPIC, Rarity.LEGENDARY)

DEFAULT_CONTRACT_COSTS: Dict[Rarity, int] = {
    Rarity.COMMON: 100,
    Rarity.RARE: 50,
    Rarity.EPIC: 20,
    Rarity.LEGENDARY: 5,
}

_MATERIAL_TOKEN = re.compile(r"^([a-z0-9_-]+)(?::(\d+))?$", re.IGNORECASE)
_PICK_PREFIX = re.compile(r"^--?(pick|materials?)\s*", re.IGNORECASE)


@dataclass(frozen=True)
class MaterialSelection:
    character_id: str
    count: int


@dataclass
class ConsumedStack:
    character_id: str
    count: int
    character: CharacterSnapshot


@dataclass
class ConsumptionResult:
    ok: bool
    consumed: int
    remaining: int
    consumed_by_id: List[ConsumedStack] = field(default_factory=list)
    error: Optional[str] = None


def build_contract_rules(costs: Optional[Mapping[Rarity, int]] = None) -> List[ContractRule]:
    merged = dict(DEFAULT_CONTRACT_COSTS)
    merged.update(costs or {})
    rules: List[ContractRule] = []
    for index, source in enumerate(CONTRACT_CHAIN[:-1]):
        rules.append(
            ContractRule(from_rarity=source, to_rarity=CONTRACT_CHAIN[index + 1], cost=max(1, int(merged[source])))
        )
    return rules


def rule_for(rules: Sequence[ContractRule], source: object) -> Optional[ContractRule]:
    rarity = Rarity.parse(source)
    if rarity is None:
        return None
    for rule in rules:
        if rule.from_rarity is rarity:
            return rule
    return None


def max_contracts(available_copies: int, cost: int) -> int:
    return max(0, int(available_copies)) // max(1, int(cost))


def executable_contracts(requested: int, max_per_command: int, available_copies: int, cost: int) -> int:
    return max(0, min(max(1, int(requested or 1)), max(1, int(max_per_command)), max_contracts(available_copies, cost)))


def collect_candidates(user: UserRecord, source: Rarity) -> List[Tuple[str, int, CharacterSnapshot]]:
    """Stacks of ``source`` rarity in consumption order.

    Stacks with duplicates come first, larger stacks before smaller ones,
    and less popular characters before favorites.
    """
    candidates = [
        (key, entry.count, entry.character)
        for key, entry in user.inventory.items()
        if entry.count > 0 and entry.character.rarity is source
    ]
    candidates.sort(key=lambda item: (item[1] <= 1, -item[1], item[2].favorites, item[2].name.lower()))
    return candidates


def consume_automatically(user: UserRecord, source: Rarity, copies: int) -> ConsumptionResult:
    """Consume ``copies`` materials, first keeping one copy of each stack, then not."""
    remaining = max(0, int(copies or 0))
    consumed = 0
    consumed_by_id: List[ConsumedStack] = []
    candidates = collect_candidates(user, source)

    for preserve_one in (True, False):
        if remaining <= 0:
            break
        for key, _count, _character in candidates:
            if remaining <= 0:
                break
            current = user.count_of(key)
            removable = current - 1 if preserve_one else current
            if removable <= 0:
                continue
            take = min(removable, remaining)
            result = inventory.consume(user, key, take)
            consumed += result.consumed
            remaining -= result.consumed
            consumed_by_id.append(ConsumedStack(key, result.consumed, result.character))

    return ConsumptionResult(ok=remaining == 0, consumed=consumed, remaining=remaining, consumed_by_id=consumed_by_id)


def normalize_material_selection(selection: Sequence[MaterialSelection]) -> List[MaterialSelection]:
    """Lowercase ids and sum duplicate picks, keeping first-seen order."""
    totals: Dict[str, int] = {}
    for item in selection or []:
        key = str(item.character_id or "").strip().lower()
        if not key:
            continue
        totals[key] = totals.get(key, 0) + max(1, int(item.count or 1))
    return [MaterialSelection(key, count) for key, count in totals.items()]


def consume_selected(
    user: UserRecord,
    source: Rarity,
    copies: int,
    selection: Sequence[MaterialSelection],
) -> ConsumptionResult:
    """Consume exactly the materials the user picked.

    Every pick is validated before anything is removed, so a bad pick
    leaves the inventory untouched.
    """
    required = max(0, int(copies or 0))
    picks = normalize_material_selection(selection)
    if required <= 0:
        return ConsumptionResult(ok=True, consumed=0, remaining=0)
    if not picks:
        return consume_automatically(user, source, required)

    def failure(message: str) -> ConsumptionResult:
        return ConsumptionResult(ok=False, consumed=0, remaining=required, error=message)

    selected = 0
    for pick in picks:
        entry = user.inventory.get(pick.character_id)
        if entry is None:
            return failure(f"You don't have a character with id `{pick.character_id}`.")
        if entry.count <= 0:
            return failure(f"No copies available for `{pick.character_id}`.")
        if entry.character.rarity is not source:
            return failure(f"`{pick.character_id}` is not {source.label}.")
        if pick.count > entry.count:
            return failure(f"`{pick.character_id}` only has {entry.count} copies, you asked for {pick.count}.")
        selected += pick.count
    if selected < required:
        return failure(f"You selected {selected} copies but {required} are needed.")

    remaining = required
    consumed = 0
    consumed_by_id: List[ConsumedStack] = []
    for pick in picks:
        if remaining <= 0:
            break
        take = min(pick.count, user.count_of(pick.character_id), remaining)
        if take <= 0:
            continue
        result = inventory.consume(user, pick.character_id, take)
        consumed += result.consumed
        remaining -= result.consumed
        consumed_by_id.append(ConsumedStack(pick.character_id, result.consumed, result.character))

    return ConsumptionResult(ok=remaining == 0, consumed=consumed, remaining=remaining, consumed_by_id=consumed_by_id)


def draw_rewards(
    reward_pool: Sequence[CharacterSnapshot],
    count: int,
    *,
    rng: Optional[random.Random] = None,
) -> List[CharacterSnapshot]:
    rng = rng or random
    if not reward_pool:
        return []
    return [rng.choice(list(reward_pool)) for _ in range(max(0, int(count)))]


def parse_material_list(raw: str) -> Tuple[List[MaterialSelection], Optional[str]]:
    """Parse ``[--pick] id[:count],id[:count]`` into material picks.

    An empty string is valid and means automatic consumption.
    """
    text = str(raw or "").strip()
    if not text:
        return [], None
    text = _PICK_PREFIX.sub("", text).strip()
    if not text:
        return [], "List character ids after `--pick`. Example: `--pick anilist_1:3,anilist_2:2`."

    tokens = [token.strip() for token in text.split(",") if token.strip()]
    if not tokens:
        return [], "Empty material list. Separate ids with commas, e.g. `anilist_1:3,anilist_2:2`."
    picks: List[MaterialSelection] = []
    for token in tokens:
        match = _MATERIAL_TOKEN.match(token)
        if not match:
            return [], f"Invalid material `{token}`. Expected `id` or `id:count`."
        count = int(match.group(2)) if match.group(2) else 1
        if count <= 0:
            return [], f"Invalid material `{token}`."
        picks.append(MaterialSelection(match.group(1).lower(), count))
    return picks, None


__all__ = [
    "CONTRACT_CHAIN",
    "ConsumedStack",
    "ConsumptionResult",
    "DEFAULT_CONTRACT_COSTS",
    "MANUAL_SELECTION_RARITIES",
    "MaterialSelection",
    "build_contract_rules",
    "collect_candidates",
    "consume_automatically",
    "consume_selected",
    "draw_rewards",
    "executable_contracts",
    "max_contracts",
    "normalize_material_selection",
    "parse_material_list",
    "rule_for",
]
