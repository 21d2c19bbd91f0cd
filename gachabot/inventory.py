"""Inventory bookkeeping for user records."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from .models import CharacterSnapshot, InventoryEntry, Rarity, RARITIES_ASCENDING, UserRecord
from .utils import normalize_text

logger = logging.getLogger("gachabot.inventory")

_NO_RANK = sys.maxsize
_NAME_OF_ANIME = " de "


@dataclass(frozen=True)
class InventorySummary:
    unique_count: int
    total_copies: int


@dataclass(frozen=True)
class ConsumeResult:
    ok: bool
    character: Optional[CharacterSnapshot]
    consumed: int
    remaining: int
    error: Optional[str] = None


def summarize(user: UserRecord) -> InventorySummary:
    unique = 0
    total = 0
    for entry in user.inventory.values():
        if entry.count <= 0:
            continue
        unique += 1
        total += entry.count
    return InventorySummary(unique_count=unique, total_copies=total)


def counts_by_rarity(entries: Iterable[InventoryEntry]) -> Dict[Rarity, int]:
    counts: Dict[Rarity, int] = {rarity: 0 for rarity in RARITIES_ASCENDING}
    for entry in entries:
        if entry.count > 0:
            counts[entry.character.rarity] += entry.count
    return counts


def upsert(user: UserRecord, character: CharacterSnapshot, copies: int = 1) -> InventoryEntry:
    """Credit ``copies`` of ``character``, merging with the stored snapshot."""
    key = str(character.id)
    snapshot = character.replace(featured=False, featured_rarity=None)
    previous = user.inventory.get(key)
    if previous is not None and previous.count > 0:
        entry = InventoryEntry(count=previous.count + copies, character=snapshot.merge(previous.character))
    else:
        entry = InventoryEntry(count=copies, character=snapshot)
    user.inventory[key] = entry
    return entry


def consume(user: UserRecord, character_id: str, copies: int = 1) -> ConsumeResult:
    """Remove ``copies`` of a character; the entry disappears when it reaches zero."""
    key = str(character_id or "").strip()
    needed = max(1, int(copies or 1))
    if not key:
        return ConsumeResult(False, None, 0, 0, "Invalid character id.")
    entry = user.inventory.get(key)
    if entry is None or entry.count <= 0:
        return ConsumeResult(False, None, 0, 0, f"No copies of `{key}` available.")
    if entry.count < needed:
        return ConsumeResult(
            False,
            entry.character,
            0,
            entry.count,
            f"`{key}` has {entry.count} copies, {needed} needed.",
        )

    remaining = entry.count - needed
    if remaining <= 0:
        del user.inventory[key]
    else:
        user.inventory[key] = InventoryEntry(count=remaining, character=entry.character)
    return ConsumeResult(True, entry.character, needed, remaining)


def normalize_inventory(user: UserRecord, catalog_by_id: Mapping[str, CharacterSnapshot]) -> bool:
    """Drop empty stacks and enrich stored snapshots from the catalog.

    Returns True when the record changed and should be written back.
    """
    changed = False
    normalized: Dict[str, InventoryEntry] = {}
    for key, entry in user.inventory.items():
        if entry.count <= 0:
            changed = True
            continue
        catalog_character = catalog_by_id.get(key)
        character = entry.character.merge(catalog_character) if catalog_character else entry.character
        if character != entry.character:
            changed = True
        normalized[key] = InventoryEntry(count=entry.count, character=character)
    user.inventory = normalized
    return changed


def sorted_entries(user: UserRecord) -> List[InventoryEntry]:
    """Largest stacks first, then rarer characters, then by name."""
    return sorted(
        (entry for entry in user.inventory.values() if entry.count > 0),
        key=lambda e: (-e.count, -e.character.rarity.rank, e.character.name.lower()),
    )


def find_entry_by_query(entries: Iterable[InventoryEntry], raw_query: str) -> Optional[InventoryEntry]:
    """Resolve a free-text query ("id", "name", "name de anime") to an owned stack.

    An exact id match wins outright. Otherwise every stack is scored on
    name/anime matches; ties go to the better popularity rank, then favorites.
    """
    safe_entries = [entry for entry in entries if entry.count > 0]
    query = str(raw_query or "").strip()
    if not safe_entries or not query:
        return None
    query_lower = query.lower()
    normalized_query = normalize_text(query)
    if not normalized_query:
        return None

    for entry in safe_entries:
        if entry.character.id.strip().lower() == query_lower:
            return entry

    name_part = anime_part = ""
    if _NAME_OF_ANIME in normalized_query:
        head, _, tail = normalized_query.rpartition(_NAME_OF_ANIME)
        name_part, anime_part = head.strip(), tail.strip()

    best: Optional[InventoryEntry] = None
    best_key = None
    for entry in safe_entries:
        character = entry.character
        name = normalize_text(character.name)
        anime = normalize_text(character.anime)
        character_id = normalize_text(character.id)
        combined = f"{name} {anime}".strip()

        score = 0
        if character_id and character_id == normalized_query:
            score += 2000
        if name == normalized_query:
            score += 1200
        elif name.startswith(normalized_query):
            score += 900
        elif normalized_query in name:
            score += 700
        if anime == normalized_query:
            score += 450
        elif normalized_query in anime:
            score += 300
        if normalized_query in combined:
            score += 250
        if name_part and anime_part and name_part in name and anime_part in anime:
            score += 1500
        if score <= 0:
            continue

        key = (score, -(character.popularity_rank or _NO_RANK), character.favorites)
        if best_key is None or key > best_key:
            best = entry
            best_key = key
    return best


__all__ = [
    "ConsumeResult",
    "InventorySummary",
    "consume",
    "counts_by_rarity",
    "find_entry_by_query",
    "normalize_inventory",
    "sorted_entries",
    "summarize",
    "upsert",
]
