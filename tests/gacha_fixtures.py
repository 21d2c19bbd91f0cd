"""Shared builders for the gacha tests."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from gachabot.config import GachaConfig
from gachabot.engine import GachaEngine
from gachabot.errors import ProviderError
from gachabot.models import CharacterSnapshot, Rarity, UserRecord
from gachabot.providers import GalleryImage
from gachabot.storage import InMemoryStore
from gachabot.utils import today_key

START = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

# Popularity ranks that classify into each rarity.
RANK_BASE = {
    Rarity.MYTHIC: 1,
    Rarity.LEGENDARY: 201,
    Rarity.EPIC: 1001,
    Rarity.RARE: 2501,
    Rarity.COMMON: 6001,
}


def char(
    character_id: str,
    rarity: Rarity = Rarity.COMMON,
    weight: Optional[float] = None,
    *,
    name: Optional[str] = None,
    anime: str = "Test Anime",
    favorites: int = 0,
    rank: int = 0,
    source: str = "anilist",
) -> CharacterSnapshot:
    return CharacterSnapshot(
        id=character_id,
        name=name or character_id.replace("_", " ").title(),
        anime=anime,
        image_urls=(f"https://img.example/{character_id}.png",),
        favorites=favorites,
        popularity_rank=rank,
        rarity=rarity,
        drop_weight=rarity.base_weight if weight is None else weight,
        source=source,
    )


def ranked_catalog(counts) -> List[CharacterSnapshot]:
    """Characters whose popularity rank classifies into the requested rarities."""
    result: List[CharacterSnapshot] = []
    for rarity, count in counts.items():
        for index in range(count):
            result.append(
                char(
                    f"{rarity.value}_{index}",
                    rarity,
                    rank=RANK_BASE[rarity] + index,
                    favorites=1000 - index,
                )
            )
    return result


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeProvider:
    def __init__(self, pool: Sequence[CharacterSnapshot] = (), top: Sequence[CharacterSnapshot] = ()) -> None:
        self.pool = list(pool)
        self.top = list(top)
        self.fail = False
        self.pool_calls = 0
        self.top_calls = 0
        self.search_calls = 0

    async def fetch_pool(self, target_count: int) -> List[CharacterSnapshot]:
        self.pool_calls += 1
        if self.fail:
            raise ProviderError("upstream down")
        return list(self.pool[:target_count])

    async def fetch_top_ranked(self, limit: int) -> List[CharacterSnapshot]:
        self.top_calls += 1
        if self.fail:
            raise ProviderError("upstream down")
        return list(self.top[:limit])

    async def search(self, query: str, limit: int) -> List[CharacterSnapshot]:
        self.search_calls += 1
        return [c for c in self.pool if query.lower() in c.name.lower()][:limit]

    async def fetch_gallery(self, character: CharacterSnapshot, limit: int) -> List[GalleryImage]:
        return [GalleryImage(url=url, source="Pool") for url in character.image_urls][:limit]


def make_config(**overrides) -> GachaConfig:
    values = dict(
        rolls_per_day=8,
        board_size=10,
        pool_size=100,
        mythic_soft_pity_rolls=5,
        mythic_hard_pity_rolls=10,
        mythic_soft_pity_step_percent=1.0,
        featured_board_boost_percent=0.0,
    )
    values.update(overrides)
    return GachaConfig(**values)


def make_engine(provider=None, config=None, *, store=None, clock=None, seed: int = 7) -> GachaEngine:
    return GachaEngine(
        store or InMemoryStore(),
        provider or FakeProvider(),
        config or make_config(),
        rng=random.Random(seed),
        clock=clock or FakeClock(),
    )


def user_for_today(clock: FakeClock, **fields) -> UserRecord:
    user = UserRecord(last_reset=today_key("UTC", clock()), **fields)
    return user


__all__ = [
    "FakeClock",
    "FakeProvider",
    "RANK_BASE",
    "START",
    "char",
    "make_config",
    "make_engine",
    "ranked_catalog",
    "user_for_today",
]
