"""Dataclasses and shared type definitions for the gacha engine."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .utils import parse_iso, to_iso, unique_urls

UNKNOWN_CHARACTER_NAME = "unknown character"
UNKNOWN_ANIME_TITLE = "unknown anime"
MIN_DROP_WEIGHT = 0.05


class Rarity(str, Enum):
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"
    MYTHIC = "mythic"

    @property
    def rank(self) -> int:
        return RARITY_RANK[self]

    @property
    def base_weight(self) -> float:
        return RARITY_BASE_WEIGHTS[self]

    @property
    def label(self) -> str:
        return self.value.title()

    @classmethod
    def parse(cls, value: object) -> Optional["Rarity"]:
        if isinstance(value, Rarity):
            return value
        token = str(value or "").strip().lower()
        try:
            return cls(token)
        except ValueError:
            return None

    @classmethod
    def coerce(cls, value: object, default: Optional["Rarity"] = None) -> "Rarity":
        parsed = cls.parse(value)
        if parsed is not None:
            return parsed
        return default if default is not None else cls.COMMON


# Ascending value; the board and inventory orderings read from this table.
RARITY_RANK: Dict[Rarity, int] = {
    Rarity.COMMON: 1,
    Rarity.RARE: 2,
    Rarity.EPIC: 3,
    Rarity.LEGENDARY: 4,
    Rarity.MYTHIC: 5,
}

RARITIES_ASCENDING: Tuple[Rarity, ...] = tuple(sorted(RARITY_RANK, key=RARITY_RANK.get))
RARITIES_DESCENDING: Tuple[Rarity, ...] = tuple(reversed(RARITIES_ASCENDING))

RARITY_BASE_WEIGHTS: Dict[Rarity, float] = {
    Rarity.COMMON: 60.0,
    Rarity.RARE: 27.0,
    Rarity.EPIC: 10.0,
    Rarity.LEGENDARY: 2.5,
    Rarity.MYTHIC: 0.5,
}


@dataclass(frozen=True)
class CharacterSnapshot:
    """Immutable, merged view of a character as stored on boards and in inventories."""

    id: str
    name: str = UNKNOWN_CHARACTER_NAME
    anime: str = UNKNOWN_ANIME_TITLE
    image_urls: Tuple[str, ...] = ()
    favorites: int = 0
    popularity_rank: int = 0
    rarity: Rarity = Rarity.COMMON
    drop_weight: float = 1.0
    source: str = "unknown"
    sources: Tuple[str, ...] = ()
    source_ids: Mapping[str, object] = field(default_factory=dict)
    featured: bool = False
    featured_rarity: Optional[Rarity] = None

    @property
    def image_url(self) -> Optional[str]:
        return self.image_urls[0] if self.image_urls else None

    @property
    def is_fallback(self) -> bool:
        return self.source.lower() == "fallback"

    @classmethod
    def placeholder(cls, character_id: str) -> "CharacterSnapshot":
        return cls(id=str(character_id))

    @classmethod
    def from_dict(cls, raw: object) -> Optional["CharacterSnapshot"]:
        if isinstance(raw, CharacterSnapshot):
            return raw
        if not isinstance(raw, Mapping):
            return None
        image_urls = unique_urls([raw.get("imageUrl"), *(raw.get("imageUrls") or [])])
        source = str(raw.get("source") or "unknown")
        raw_sources = raw.get("sources")
        if isinstance(raw_sources, (list, tuple)):
            sources = tuple(dict.fromkeys(str(item) for item in raw_sources if item))
        else:
            sources = ()
        raw_source_ids = raw.get("sourceIds")
        return cls(
            id=str(raw.get("id") or "").strip(),
            name=str(raw.get("name") or "").strip() or UNKNOWN_CHARACTER_NAME,
            anime=str(raw.get("anime") or "").strip() or UNKNOWN_ANIME_TITLE,
            image_urls=tuple(image_urls),
            favorites=_safe_int(raw.get("favorites")),
            popularity_rank=_safe_int(raw.get("popularityRank")),
            rarity=Rarity.coerce(raw.get("rarity")),
            drop_weight=_safe_float(raw.get("dropWeight"), 1.0) or 1.0,
            source=source,
            sources=sources,
            source_ids=dict(raw_source_ids) if isinstance(raw_source_ids, Mapping) else {},
            featured=bool(raw.get("featured")),
            featured_rarity=Rarity.parse(raw.get("featuredRarity")) if raw.get("featuredRarity") else None,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "anime": self.anime,
            "imageUrl": self.image_url,
            "imageUrls": list(self.image_urls),
            "favorites": self.favorites,
            "popularityRank": self.popularity_rank,
            "rarity": self.rarity.value,
            "dropWeight": self.drop_weight,
            "source": self.source,
            "sources": list(self.sources),
            "sourceIds": dict(self.source_ids),
            "featured": self.featured,
            "featuredRarity": self.featured_rarity.value if self.featured_rarity else None,
        }

    def merge(self, other: Optional["CharacterSnapshot"]) -> "CharacterSnapshot":
        """Combine two views of the same character; ``self`` wins on scalar conflicts."""
        if other is None:
            return self
        name = self.name if self.name != UNKNOWN_CHARACTER_NAME else other.name
        anime = self.anime if self.anime != UNKNOWN_ANIME_TITLE else other.anime
        source_ids: Dict[str, object] = dict(other.source_ids)
        source_ids.update(self.source_ids)
        return CharacterSnapshot(
            id=self.id or other.id,
            name=name,
            anime=anime,
            image_urls=tuple(unique_urls([*self.image_urls, *other.image_urls])),
            favorites=max(self.favorites, other.favorites),
            popularity_rank=max(self.popularity_rank, other.popularity_rank),
            rarity=self.rarity,
            drop_weight=self.drop_weight or other.drop_weight or 1.0,
            source=self.source if self.source != "unknown" else other.source,
            sources=tuple(dict.fromkeys([*self.sources, *other.sources])),
            source_ids=source_ids,
            featured=self.featured or other.featured,
            featured_rarity=self.featured_rarity or other.featured_rarity,
        )

    def replace(self, **changes) -> "CharacterSnapshot":
        return dataclasses.replace(self, **changes)


@dataclass
class InventoryEntry:
    count: int
    character: CharacterSnapshot

    def to_dict(self) -> Dict[str, object]:
        return {"count": self.count, "character": self.character.to_dict()}


@dataclass(frozen=True)
class UserMeta:
    """Display metadata supplied by the command layer for the acting user."""

    username: Optional[str] = None
    display_name: Optional[str] = None
    is_bot: bool = False

    @classmethod
    def clean(cls, username: object = None, display_name: object = None, *, is_bot: bool = False) -> "UserMeta":
        safe_username = username.strip() if isinstance(username, str) and username.strip() else None
        safe_display = display_name.strip() if isinstance(display_name, str) and display_name.strip() else None
        return cls(username=safe_username, display_name=safe_display or safe_username, is_bot=is_bot)


@dataclass
class UserRecord:
    username: Optional[str] = None
    display_name: Optional[str] = None
    last_reset: Optional[str] = None
    rolls_left: int = 0
    total_rolls: int = 0
    mythic_pity_counter: int = 0
    inventory: Dict[str, InventoryEntry] = field(default_factory=dict)
    last_roll_at: Optional[datetime] = None
    last_daily_claim_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, object]) -> "UserRecord":
        legacy_pity = _safe_int(raw.get("pityCounter"))
        raw_pity = raw.get("mythicPityCounter")
        pity = _safe_int(raw_pity) if isinstance(raw_pity, (int, float)) else legacy_pity
        rolls_left = raw.get("rollsLeft")
        return cls(
            username=_clean_str(raw.get("username")),
            display_name=_clean_str(raw.get("displayName")),
            last_reset=str(raw["lastReset"]) if raw.get("lastReset") else None,
            rolls_left=int(rolls_left) if isinstance(rolls_left, (int, float)) else 0,
            total_rolls=_safe_int(raw.get("totalRolls")),
            mythic_pity_counter=max(0, pity),
            inventory=parse_inventory(raw.get("inventory")),
            last_roll_at=parse_iso(raw.get("lastRollAt")),
            last_daily_claim_at=parse_iso(raw.get("lastDailyClaimAt")),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "username": self.username,
            "displayName": self.display_name,
            "lastReset": self.last_reset,
            "rollsLeft": self.rolls_left,
            "totalRolls": self.total_rolls,
            "mythicPityCounter": self.mythic_pity_counter,
            "inventory": {key: entry.to_dict() for key, entry in self.inventory.items()},
            "lastRollAt": to_iso(self.last_roll_at),
            "lastDailyClaimAt": to_iso(self.last_daily_claim_at),
        }

    def copy(self) -> "UserRecord":
        return dataclasses.replace(
            self,
            inventory={key: InventoryEntry(entry.count, entry.character) for key, entry in self.inventory.items()},
        )

    def count_of(self, character_id: str) -> int:
        entry = self.inventory.get(character_id)
        return entry.count if entry else 0


def parse_inventory(raw: object) -> Dict[str, InventoryEntry]:
    """Read persisted inventory, accepting legacy bare-count entries."""
    if not isinstance(raw, Mapping):
        return {}
    inventory: Dict[str, InventoryEntry] = {}
    for raw_id, raw_entry in raw.items():
        key = str(raw_id)
        if isinstance(raw_entry, (int, float)) and not isinstance(raw_entry, bool):
            count = max(0, int(raw_entry))
            snapshot = None
        elif isinstance(raw_entry, Mapping):
            count = _safe_int(raw_entry.get("count"))
            snapshot = CharacterSnapshot.from_dict(raw_entry.get("character"))
        else:
            continue
        if count <= 0:
            continue
        if snapshot is None or not snapshot.id:
            snapshot = (snapshot or CharacterSnapshot.placeholder(key)).replace(id=key)
        inventory[key] = InventoryEntry(count=count, character=snapshot)
    return inventory


@dataclass(frozen=True)
class ContractRule:
    from_rarity: Rarity
    to_rarity: Rarity
    cost: int


class TradeStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not TradeStatus.PENDING


class TradeTransitionError(ValueError):
    """Raised when code attempts a second transition out of ``pending``."""


@dataclass
class TradeOffer:
    id: str
    proposer_id: str
    target_id: str
    offered_character_id: str
    requested_character_id: str
    offered_character: CharacterSnapshot
    requested_character: CharacterSnapshot
    created_at: datetime
    expires_at: Optional[datetime] = None
    status: TradeStatus = TradeStatus.PENDING
    resolved_at: Optional[datetime] = None
    proposer_username: Optional[str] = None
    proposer_display_name: Optional[str] = None
    target_username: Optional[str] = None
    target_display_name: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status is TradeStatus.PENDING

    def involves(self, user_id: str) -> bool:
        return user_id in (self.proposer_id, self.target_id)

    def is_past_due(self, now: datetime) -> bool:
        return self.is_pending and self.expires_at is not None and self.expires_at <= now

    def resolve(self, status: TradeStatus, when: datetime) -> None:
        if not self.is_pending:
            raise TradeTransitionError(f"Trade {self.id} is already {self.status.value}.")
        if not status.is_terminal:
            raise TradeTransitionError("A trade can only move to a terminal status.")
        self.status = status
        self.resolved_at = when

    def history_key(self) -> datetime:
        return self.resolved_at or self.created_at

    @classmethod
    def from_dict(cls, raw: object) -> Optional["TradeOffer"]:
        if not isinstance(raw, Mapping):
            return None
        trade_id = str(raw.get("id") or "").strip()
        proposer_id = str(raw.get("proposerId") or "").strip()
        target_id = str(raw.get("targetId") or "").strip()
        offered_id = str(raw.get("offeredCharacterId") or "").strip()
        requested_id = str(raw.get("requestedCharacterId") or "").strip()
        if not all((trade_id, proposer_id, target_id, offered_id, requested_id)):
            return None
        try:
            status = TradeStatus(str(raw.get("status") or "").strip().lower())
        except ValueError:
            status = TradeStatus.PENDING
        proposer_username = _clean_str(raw.get("proposerUsername"))
        target_username = _clean_str(raw.get("targetUsername"))
        offered = CharacterSnapshot.from_dict(raw.get("offeredCharacter"))
        requested = CharacterSnapshot.from_dict(raw.get("requestedCharacter"))
        return cls(
            id=trade_id,
            proposer_id=proposer_id,
            target_id=target_id,
            offered_character_id=offered_id,
            requested_character_id=requested_id,
            offered_character=_with_id(offered, offered_id),
            requested_character=_with_id(requested, requested_id),
            created_at=parse_iso(raw.get("createdAt")) or parse_iso("1970-01-01T00:00:00Z"),
            expires_at=parse_iso(raw.get("expiresAt")),
            status=status,
            resolved_at=parse_iso(raw.get("resolvedAt")),
            proposer_username=proposer_username,
            proposer_display_name=_clean_str(raw.get("proposerDisplayName")) or proposer_username,
            target_username=target_username,
            target_display_name=_clean_str(raw.get("targetDisplayName")) or target_username,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "proposerId": self.proposer_id,
            "proposerUsername": self.proposer_username,
            "proposerDisplayName": self.proposer_display_name,
            "targetId": self.target_id,
            "targetUsername": self.target_username,
            "targetDisplayName": self.target_display_name,
            "offeredCharacterId": self.offered_character_id,
            "requestedCharacterId": self.requested_character_id,
            "offeredCharacter": self.offered_character.to_dict(),
            "requestedCharacter": self.requested_character.to_dict(),
            "status": self.status.value,
            "createdAt": to_iso(self.created_at),
            "expiresAt": to_iso(self.expires_at),
            "resolvedAt": to_iso(self.resolved_at),
        }

    def copy(self) -> "TradeOffer":
        return dataclasses.replace(self)


@dataclass(frozen=True)
class Board:
    characters: Tuple[CharacterSnapshot, ...] = ()
    updated_at: Optional[datetime] = None

    @property
    def character_ids(self) -> List[str]:
        return [character.id for character in self.characters]

    def __len__(self) -> int:
        return len(self.characters)

    def mythics(self) -> List[CharacterSnapshot]:
        return [character for character in self.characters if character.rarity is Rarity.MYTHIC]


@dataclass
class GachaState:
    board_characters: List[CharacterSnapshot] = field(default_factory=list)
    board_character_ids: List[str] = field(default_factory=list)
    board_updated_at: Optional[datetime] = None
    pool_updated_at: Optional[datetime] = None
    mythic_characters: List[CharacterSnapshot] = field(default_factory=list)
    mythic_catalog_updated_at: Optional[datetime] = None
    trade_offers: List[TradeOffer] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: object) -> "GachaState":
        if not isinstance(raw, Mapping):
            return cls()
        board_updated_at = parse_iso(raw.get("boardUpdatedAt")) or parse_iso(raw.get("boardDate"))
        return cls(
            board_characters=_parse_snapshots(raw.get("boardCharacters")),
            board_character_ids=[str(item) for item in raw.get("boardCharacterIds") or [] if item],
            board_updated_at=board_updated_at,
            pool_updated_at=parse_iso(raw.get("poolUpdatedAt")),
            mythic_characters=_parse_snapshots(raw.get("mythicCharacters")),
            mythic_catalog_updated_at=parse_iso(raw.get("mythicCatalogUpdatedAt")),
            trade_offers=[
                offer for offer in (TradeOffer.from_dict(item) for item in raw.get("tradeOffers") or []) if offer
            ],
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "boardCharacters": [character.to_dict() for character in self.board_characters],
            "boardCharacterIds": list(self.board_character_ids),
            "boardUpdatedAt": to_iso(self.board_updated_at),
            "poolUpdatedAt": to_iso(self.pool_updated_at),
            "mythicCharacters": [character.to_dict() for character in self.mythic_characters],
            "mythicCatalogUpdatedAt": to_iso(self.mythic_catalog_updated_at),
            "tradeOffers": [offer.to_dict() for offer in self.trade_offers],
        }

    def copy(self) -> "GachaState":
        return dataclasses.replace(
            self,
            board_characters=list(self.board_characters),
            board_character_ids=list(self.board_character_ids),
            mythic_characters=list(self.mythic_characters),
            trade_offers=[offer.copy() for offer in self.trade_offers],
        )


def _parse_snapshots(raw: object) -> List[CharacterSnapshot]:
    if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)):
        return []
    snapshots = (CharacterSnapshot.from_dict(item) for item in raw)
    return [snapshot for snapshot in snapshots if snapshot is not None and snapshot.id]


def _with_id(snapshot: Optional[CharacterSnapshot], character_id: str) -> CharacterSnapshot:
    if snapshot is None:
        return CharacterSnapshot.placeholder(character_id)
    if not snapshot.id:
        return snapshot.replace(id=character_id)
    return snapshot


def _clean_str(value: object) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _safe_int(value: object) -> int:
    try:
        return max(0, int(float(value or 0)))
    except (TypeError, ValueError):
        return 0


def _safe_float(value: object, default: float) -> float:
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def iter_snapshots(values: Iterable[object]) -> Iterable[CharacterSnapshot]:
    for value in values:
        snapshot = CharacterSnapshot.from_dict(value)
        if snapshot is not None and snapshot.id:
            yield snapshot


__all__ = [
    "Board",
    "CharacterSnapshot",
    "ContractRule",
    "GachaState",
    "InventoryEntry",
    "MIN_DROP_WEIGHT",
    "RARITIES_ASCENDING",
    "RARITIES_DESCENDING",
    "RARITY_BASE_WEIGHTS",
    "RARITY_RANK",
    "Rarity",
    "TradeOffer",
    "TradeStatus",
    "TradeTransitionError",
    "UNKNOWN_ANIME_TITLE",
    "UNKNOWN_CHARACTER_NAME",
    "UserMeta",
    "UserRecord",
    "iter_snapshots",
    "parse_inventory",
]
