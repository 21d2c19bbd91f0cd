"""Catalog normalization: canonical character snapshots and rarity classification."""

from __future__ import annotations

import logging
import sys
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .models import (
    MIN_DROP_WEIGHT,
    RARITY_BASE_WEIGHTS,
    UNKNOWN_ANIME_TITLE,
    CharacterSnapshot,
    Rarity,
)
from .utils import normalize_text

logger = logging.getLogger("gachabot.catalog")

# Inclusive upper bounds on popularity rank (1 = most popular).
POPULARITY_RANK_THRESHOLDS: Dict[Rarity, int] = {
    Rarity.MYTHIC: 200,
    Rarity.LEGENDARY: 1000,
    Rarity.EPIC: 2500,
    Rarity.RARE: 6000,
}

# Inclusive lower bounds on favorites, used when the rank is unknown.
FAVORITES_THRESHOLDS: Dict[Rarity, int] = {
    Rarity.MYTHIC: 75000,
    Rarity.LEGENDARY: 25000,
    Rarity.EPIC: 7000,
    Rarity.RARE: 1500,
}

_UNKNOWN_ANIME_TOKENS = {"anime desconocido", "unknown anime", "desconocido", "unknown"}
_NO_RANK = sys.maxsize


def classify_rarity(character: CharacterSnapshot) -> Rarity:
    rank = max(0, character.popularity_rank)
    if rank > 0:
        for rarity, ceiling in POPULARITY_RANK_THRESHOLDS.items():
            if rank <= ceiling:
                return rarity
        return Rarity.COMMON

    favorites = max(0, character.favorites)
    for rarity, floor in FAVORITES_THRESHOLDS.items():
        if favorites >= floor:
            return rarity
    return Rarity.COMMON


def base_drop_weight(rarity: Rarity) -> float:
    return max(MIN_DROP_WEIGHT, round(RARITY_BASE_WEIGHTS.get(rarity, 1.0), 4))


def normalize(raw_records: Optional[Iterable[object]]) -> List[CharacterSnapshot]:
    """Turn provider records into canonical snapshots, one per id.

    Records without an id are dropped; repeated ids are merged rather than
    overwritten. Empty input yields an empty list.
    """
    return merge_character_lists(raw_records or [])


def merge_character_lists(*lists: Iterable[object]) -> List[CharacterSnapshot]:
    by_id: Dict[str, CharacterSnapshot] = {}
    for records in lists:
        for record in records or []:
            snapshot = CharacterSnapshot.from_dict(record)
            if snapshot is None or not snapshot.id:
                continue
            existing = by_id.get(snapshot.id)
            by_id[snapshot.id] = snapshot.merge(existing) if existing else snapshot
    return list(by_id.values())


def assign_rarity_and_weight(characters: Sequence[CharacterSnapshot]) -> List[CharacterSnapshot]:
    """Classify every character and reset its weight to the rarity's base weight."""
    classified: List[CharacterSnapshot] = []
    for character in sort_by_ranking(characters):
        rarity = classify_rarity(character)
        classified.append(
            character.replace(
                rarity=rarity,
                drop_weight=base_drop_weight(rarity),
                featured=False,
                featured_rarity=None,
            )
        )
    return classified


def force_rarity(characters: Iterable[CharacterSnapshot], rarity: Rarity) -> List[CharacterSnapshot]:
    return [
        character.replace(rarity=rarity, drop_weight=base_drop_weight(rarity)) for character in characters
    ]


def sort_for_pool(characters: Iterable[CharacterSnapshot]) -> List[CharacterSnapshot]:
    return sorted(
        characters,
        key=lambda c: (-c.favorites, c.popularity_rank or _NO_RANK, c.name.lower()),
    )


def sort_by_ranking(characters: Iterable[CharacterSnapshot]) -> List[CharacterSnapshot]:
    """Ranked characters first (ascending rank), then by favorites, then name."""
    return sorted(
        characters,
        key=lambda c: (c.popularity_rank <= 0, c.popularity_rank or 0, -c.favorites, c.name.lower()),
    )


def is_known_anime_title(title: Optional[str]) -> bool:
    anime = (title or "").strip().lower()
    return bool(anime) and anime not in _UNKNOWN_ANIME_TOKENS and anime != UNKNOWN_ANIME_TITLE


def has_known_anime(character: CharacterSnapshot) -> bool:
    return is_known_anime_title(character.anime)


def by_id(characters: Iterable[CharacterSnapshot]) -> Dict[str, CharacterSnapshot]:
    return {character.id: character for character in characters}


def find_best_character_match(
    query: str,
    characters: Iterable[CharacterSnapshot],
) -> Optional[CharacterSnapshot]:
    """Score name/anime/id matches and return the strongest candidate."""
    normalized_query = normalize_text(query)
    if not normalized_query:
        return None

    best: Optional[CharacterSnapshot] = None
    best_score = 0
    for character in characters:
        name = normalize_text(character.name)
        score = 0
        if name == normalized_query:
            score += 500
        elif name.startswith(normalized_query):
            score += 350
        elif normalized_query in name:
            score += 250
        if normalized_query in normalize_text(character.anime):
            score += 80
        if normalize_text(character.id) == normalized_query:
            score += 500
        if score <= 0:
            continue
        if best is None or score > best_score or (score == best_score and character.favorites > best.favorites):
            best = character
            best_score = score
    return best


def characters_of_rarity(characters: Iterable[CharacterSnapshot], rarity: Rarity) -> List[CharacterSnapshot]:
    matching = [character for character in characters if character.rarity is rarity]
    return sorted(
        matching,
        key=lambda c: (c.popularity_rank or _NO_RANK, -c.favorites, c.name.lower()),
    )


def summarize_sources(characters: Iterable[CharacterSnapshot]) -> Mapping[str, int]:
    counts: Dict[str, int] = {}
    for character in characters:
        counts[character.source] = counts.get(character.source, 0) + 1
    return counts


__all__ = [
    "FAVORITES_THRESHOLDS",
    "POPULARITY_RANK_THRESHOLDS",
    "assign_rarity_and_weight",
    "base_drop_weight",
    "by_id",
    "characters_of_rarity",
    "classify_rarity",
    "find_best_character_match",
    "force_rarity",
    "has_known_anime",
    "is_known_anime_title",
    "merge_character_lists",
    "normalize",
    "sort_by_ranking",
    "sort_for_pool",
    "summarize_sources",
]
