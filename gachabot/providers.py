"""Character catalog providers: AniList over aiohttp plus a static fallback set."""

from __future__ import annotations

import asyncio
import logging
import math
import random
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import aiohttp

from . import catalog
from .errors import ProviderError
from .models import CharacterSnapshot
from .utils import normalize_text, unique_urls

logger = logging.getLogger("gachabot.providers")

ANILIST_API_URL = "https://graphql.anilist.co"
ANILIST_PAGE_SIZE = 50
ANILIST_MAX_ATTEMPTS = 4
ANILIST_RETRY_BASE_SECONDS = 0.8
ANILIST_RETRY_MAX_SECONDS = 10.0
ANILIST_RANDOM_TOP_PAGE_LIMIT = 300
ANILIST_TIMEOUT_SECONDS = 15
MAX_TOP_RANKED = 250

_RETRIABLE_MESSAGES = ("rate limit", "too many requests", "internal", "temporarily unavailable")

_CHARACTER_FIELDS = """
        id
        name { full native }
        image { large medium }
        favourites
        media(perPage: 3, type: ANIME, sort: [POPULARITY_DESC]) {
          nodes { title { romaji english native } }
        }
"""

TOP_CHARACTERS_QUERY = (
    """
query TopCharacters($page: Int!, $perPage: Int!) {
  Page(page: $page, perPage: $perPage) {
    pageInfo { currentPage lastPage hasNextPage }
    characters(sort: [FAVOURITES_DESC]) {"""
    + _CHARACTER_FIELDS
    + """    }
  }
}
"""
)

SEARCH_CHARACTERS_QUERY = (
    """
query SearchCharacters($search: String!, $page: Int!, $perPage: Int!) {
  Page(page: $page, perPage: $perPage) {
    characters(search: $search, sort: [FAVOURITES_DESC]) {"""
    + _CHARACTER_FIELDS
    + """    }
  }
}
"""
)

# Ranks span every rarity tier so an outage board is not all mythic.
FALLBACK_CHARACTERS: Sequence[Mapping[str, object]] = tuple(
    {
        "id": f"fallback_{index}",
        "source": "fallback",
        "sources": ["fallback"],
        "name": name,
        "anime": anime,
        "imageUrl": f"https://placehold.co/600x900/png?text={name.split()[0]}",
        "favorites": favorites,
        "popularityRank": rank,
    }
    for index, (name, anime, favorites, rank) in enumerate(
        (
            ("Saber", "Fate/stay night", 120000, 1),
            ("Lelouch Lamperouge", "Code Geass", 100000, 450),
            ("Rem", "Re:Zero", 90000, 800),
            ("Mikasa Ackerman", "Shingeki no Kyojin", 80000, 1400),
            ("Gojo Satoru", "Jujutsu Kaisen", 70000, 2100),
            ("Rias Gremory", "High School DxD", 60000, 3200),
            ("Mai Sakurajima", "Seishun Buta Yarou", 50000, 4500),
            ("Zero Two", "Darling in the Franxx", 40000, 5600),
            ("Power", "Chainsaw Man", 30000, 7000),
            ("Violet Evergarden", "Violet Evergarden", 20000, 9000),
        ),
        start=1,
    )
)


@dataclass(frozen=True)
class GalleryImage:
    url: str
    source: str


class CatalogProvider(Protocol):
    async def fetch_pool(self, target_count: int) -> List[CharacterSnapshot]: ...

    async def fetch_top_ranked(self, limit: int) -> List[CharacterSnapshot]: ...

    async def search(self, query: str, limit: int) -> List[CharacterSnapshot]: ...

    async def fetch_gallery(self, character: CharacterSnapshot, limit: int) -> List[GalleryImage]: ...


class _RetriableError(ProviderError):
    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


def _retry_after_seconds(raw: Optional[str]) -> Optional[float]:
    try:
        value = int(str(raw or "").strip())
    except ValueError:
        return None
    return float(value) if value > 0 else None


def backoff_seconds(attempt: int, rng: Optional[random.Random] = None) -> float:
    """Exponential delay for ``attempt`` (1-based) plus up to one base step of jitter."""
    rng = rng or random
    base = min(ANILIST_RETRY_MAX_SECONDS, ANILIST_RETRY_BASE_SECONDS * (2 ** max(0, attempt - 1)))
    return base + rng.uniform(0, ANILIST_RETRY_BASE_SECONDS)


def build_page_plan(last_page: int, pages_needed: int, rng: Optional[random.Random] = None) -> List[int]:
    """Pages to request: always 1 (and 6), then random pages from the popular window."""
    rng = rng or random
    last_page = max(1, int(last_page or 1))
    pages_needed = max(1, int(pages_needed or 1))
    plan: List[int] = []
    seen = set()

    def push(page: int) -> None:
        page = max(1, min(last_page, page))
        if page not in seen:
            seen.add(page)
            plan.append(page)

    push(1)
    if last_page >= 6:
        push(6)

    window = max(1, min(last_page, ANILIST_RANDOM_TOP_PAGE_LIMIT))
    for candidates in (range(1, window + 1), range(window + 1, last_page + 1)):
        pool = [page for page in candidates if page not in seen]
        rng.shuffle(pool)
        for page in pool:
            if len(plan) >= pages_needed:
                break
            push(page)
    return plan[:pages_needed]


def _anime_title(media_nodes: Iterable[Mapping[str, object]]) -> str:
    for media in media_nodes or []:
        title = (media or {}).get("title") or {}
        value = title.get("english") or title.get("romaji") or title.get("native")
        if value and str(value).strip():
            return str(value)
    return ""


def map_anilist_character(raw: Mapping[str, object], popularity_rank: int) -> Dict[str, object]:
    image = raw.get("image") or {}
    name = raw.get("name") or {}
    image_url = image.get("large") or image.get("medium")
    anilist_id = int(raw.get("id") or 0)
    return {
        "id": f"anilist_{anilist_id}",
        "source": "anilist",
        "sources": ["anilist"],
        "sourceIds": {"anilistId": anilist_id},
        "name": name.get("full") or name.get("native") or "",
        "anime": _anime_title(((raw.get("media") or {}).get("nodes")) or []),
        "imageUrl": image_url,
        "favorites": int(raw.get("favourites") or 0),
        "popularityRank": int(popularity_rank or 0),
    }


def _text_match(candidate: object, query: object) -> bool:
    left = normalize_text(candidate)
    right = normalize_text(query)
    if not left or not right:
        return False
    return left == right or right in left or left in right


class AniListClient:
    """Minimal AniList GraphQL client with bounded, ``Retry-After`` aware retries."""

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        page_delay: float = 0.35,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._page_delay = page_delay
        self._rng = rng or random.Random()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=ANILIST_TIMEOUT_SECONDS),
                headers={"Accept": "application/json", "User-Agent": "gachabot/1.0"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _post_once(self, query: str, variables: Mapping[str, object]) -> Mapping[str, object]:
        session = await self._get_session()
        try:
            async with session.post(ANILIST_API_URL, json={"query": query, "variables": dict(variables)}) as resp:
                if resp.status == 429 or resp.status >= 500:
                    raise _RetriableError(
                        f"AniList HTTP {resp.status}",
                        retry_after=_retry_after_seconds(resp.headers.get("Retry-After")),
                    )
                if resp.status != 200:
                    raise ProviderError(f"AniList HTTP {resp.status}")
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise _RetriableError(f"AniList request failed: {exc}") from exc

        errors = (payload or {}).get("errors") or []
        if errors:
            message = str((errors[0] or {}).get("message") or "AniList request failed")
            if any(token in message.lower() for token in _RETRIABLE_MESSAGES):
                raise _RetriableError(message)
            raise ProviderError(message)
        return (payload or {}).get("data") or {}

    async def request(self, query: str, variables: Mapping[str, object]) -> Mapping[str, object]:
        for attempt in range(1, ANILIST_MAX_ATTEMPTS + 1):
            try:
                return await self._post_once(query, variables)
            except _RetriableError as exc:
                if attempt >= ANILIST_MAX_ATTEMPTS:
                    raise ProviderError(str(exc)) from exc
                delay = exc.retry_after or backoff_seconds(attempt, self._rng)
                logger.warning("AniList attempt %d failed (%s); retrying in %.1fs", attempt, exc, delay)
                await asyncio.sleep(delay)
        raise ProviderError("AniList request failed")

    async def fetch_top_characters(self, target_count: int) -> List[Dict[str, object]]:
        """Top characters by favourites, sampled across pages; partial results survive page errors."""
        target = max(1, int(target_count or 1))
        per_page = max(1, min(ANILIST_PAGE_SIZE, target))
        metadata = await self.request(TOP_CHARACTERS_QUERY, {"page": 1, "perPage": 1})
        last_page = max(1, int(((metadata.get("Page") or {}).get("pageInfo") or {}).get("lastPage") or 1))
        pages_needed = max(1, math.ceil(target / per_page))

        result: List[Dict[str, object]] = []
        seen_ids = set()
        fetched_pages = set()

        async def consume(page: int) -> None:
            if page in fetched_pages or len(result) >= target:
                return
            fetched_pages.add(page)
            try:
                data = await self.request(TOP_CHARACTERS_QUERY, {"page": page, "perPage": per_page})
            except ProviderError as exc:
                if result:
                    logger.warning("AniList top characters interrupted on page %d; keeping %d: %s", page, len(result), exc)
                    return
                raise
            for index, raw in enumerate((data.get("Page") or {}).get("characters") or []):
                character_id = int((raw or {}).get("id") or 0)
                if not character_id or character_id in seen_ids:
                    continue
                seen_ids.add(character_id)
                result.append(map_anilist_character(raw, (page - 1) * per_page + index + 1))
                if len(result) >= target:
                    break

        for page in build_page_plan(last_page, pages_needed, self._rng):
            await consume(page)
            if len(result) >= target:
                break
            await asyncio.sleep(self._page_delay)

        if len(result) < target and len(fetched_pages) < last_page:
            remaining = [page for page in range(1, last_page + 1) if page not in fetched_pages]
            self._rng.shuffle(remaining)
            missing = max(1, math.ceil((target - len(result)) / per_page))
            for page in remaining[: missing + 2]:
                await consume(page)
                if len(result) >= target:
                    break
                await asyncio.sleep(self._page_delay)

        return result[:target]

    async def search_characters(self, query: str, limit: int = 25) -> List[Dict[str, object]]:
        text = str(query or "").strip()
        if not text:
            return []
        safe_limit = max(1, min(int(limit or 25), 50))
        data = await self.request(SEARCH_CHARACTERS_QUERY, {"search": text, "page": 1, "perPage": safe_limit})
        result: List[Dict[str, object]] = []
        seen = set()
        for raw in (data.get("Page") or {}).get("characters") or []:
            if not (raw or {}).get("id") or raw["id"] in seen:
                continue
            seen.add(raw["id"])
            result.append(map_anilist_character(raw, len(result) + 1))
            if len(result) >= safe_limit:
                break
        return result

    async def search_character_images(self, name: str, limit: int = 24, anime: str = "") -> List[GalleryImage]:
        text = str(name or "").strip()
        if not text:
            return []
        per_page = max(1, min(limit, 25))
        data = await self.request(SEARCH_CHARACTERS_QUERY, {"search": text, "page": 1, "perPage": per_page})
        known_anime = catalog.is_known_anime_title(anime)
        links: List[GalleryImage] = []
        seen = set()
        for raw in (data.get("Page") or {}).get("characters") or []:
            names = (raw or {}).get("name") or {}
            if not (_text_match(names.get("full"), text) or _text_match(names.get("native"), text)):
                continue
            if known_anime:
                titles = [
                    value
                    for media in ((raw.get("media") or {}).get("nodes") or [])
                    for value in ((media or {}).get("title") or {}).values()
                    if value
                ]
                if not any(_text_match(title, anime) for title in titles):
                    continue
            image = raw.get("image") or {}
            for url in unique_urls([image.get("large"), image.get("medium")]):
                if url in seen:
                    continue
                seen.add(url)
                links.append(GalleryImage(url=url, source="AniList"))
                if len(links) >= limit:
                    return links
        return links


class FallbackProvider:
    """Static catalog used when upstream providers are unavailable."""

    def __init__(self, records: Optional[Sequence[Mapping[str, object]]] = None) -> None:
        self._records = list(records if records is not None else FALLBACK_CHARACTERS)

    async def fetch_pool(self, target_count: int) -> List[CharacterSnapshot]:
        return catalog.normalize(self._records[: max(1, int(target_count or 1))])

    async def fetch_top_ranked(self, limit: int) -> List[CharacterSnapshot]:
        return catalog.sort_by_ranking(catalog.normalize(self._records))[: max(1, int(limit or 1))]

    async def search(self, query: str, limit: int) -> List[CharacterSnapshot]:
        match = catalog.find_best_character_match(query, catalog.normalize(self._records))
        return [match] if match else []

    async def fetch_gallery(self, character: CharacterSnapshot, limit: int) -> List[GalleryImage]:
        return [GalleryImage(url=url, source="Pool") for url in character.image_urls[: max(1, int(limit or 1))]]


class CatalogService:
    """Combines AniList with the fallback set; never raises for upstream failures."""

    def __init__(self, client: Optional[AniListClient] = None, fallback: Optional[FallbackProvider] = None) -> None:
        self.client = client or AniListClient()
        self.fallback = fallback or FallbackProvider()

    async def close(self) -> None:
        await self.client.close()

    @staticmethod
    def _prefer_known_anime(characters: List[CharacterSnapshot]) -> List[CharacterSnapshot]:
        with_anime = [character for character in characters if catalog.has_known_anime(character)]
        return with_anime or characters

    async def fetch_pool(self, target_count: int) -> List[CharacterSnapshot]:
        target = max(1, int(target_count or 1))
        try:
            fetch_target = max(target, min(5000, target * 2))
            characters = catalog.normalize(await self.client.fetch_top_characters(fetch_target))
            if characters:
                return self._prefer_known_anime(characters)[:target]
        except ProviderError as exc:
            logger.warning("AniList pool fetch failed: %s", exc)
        logger.warning("Serving fallback catalog (target=%d)", target)
        return await self.fallback.fetch_pool(target)

    async def fetch_top_ranked(self, limit: int) -> List[CharacterSnapshot]:
        safe_limit = max(1, min(MAX_TOP_RANKED, int(limit or MAX_TOP_RANKED)))
        try:
            characters = catalog.normalize(await self.client.fetch_top_characters(safe_limit))
        except ProviderError as exc:
            logger.warning("AniList top ranked fetch failed: %s", exc)
            return []
        return catalog.sort_by_ranking(characters)[:safe_limit]

    async def search(self, query: str, limit: int) -> List[CharacterSnapshot]:
        text = str(query or "").strip()
        if not text:
            return []
        safe_limit = max(1, int(limit or 20))
        try:
            matches = catalog.normalize(
                await self.client.search_characters(text, max(safe_limit, min(50, safe_limit * 2)))
            )
        except ProviderError as exc:
            logger.warning("AniList search failed for %r: %s", text, exc)
            return []
        return self._prefer_known_anime(matches)[:safe_limit]

    async def fetch_gallery(self, character: CharacterSnapshot, limit: int) -> List[GalleryImage]:
        safe_limit = max(1, int(limit or 1))
        links: List[GalleryImage] = [GalleryImage(url=url, source="Pool") for url in character.image_urls]
        try:
            links.extend(await self.client.search_character_images(character.name, safe_limit, character.anime))
        except ProviderError as exc:
            logger.warning("AniList gallery lookup failed for %s: %s", character.id, exc)
        seen = set()
        unique: List[GalleryImage] = []
        for link in links:
            if link.url in seen:
                continue
            seen.add(link.url)
            unique.append(link)
        return unique[:safe_limit]


__all__ = [
    "AniListClient",
    "CatalogProvider",
    "CatalogService",
    "FALLBACK_CHARACTERS",
    "FallbackProvider",
    "GalleryImage",
    "MAX_TOP_RANKED",
    "backoff_seconds",
    "build_page_plan",
    "map_anilist_character",
]
