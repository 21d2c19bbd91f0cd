"""Gacha economy engine: boards, rolls, contracts and trades behind one state owner."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from . import board as board_mod
from . import catalog, contracts, inventory, rolls, trades
from .config import GachaConfig
from .errors import ErrorKind, OperationResult, ProviderError
from .models import (
    Board,
    CharacterSnapshot,
    ContractRule,
    GachaState,
    InventoryEntry,
    Rarity,
    TradeOffer,
    TradeStatus,
    UserMeta,
    UserRecord,
)
from .providers import CatalogProvider, GalleryImage
from .singleflight import SingleFlight
from .storage import GachaStore
from .utils import today_key, utc_now

logger = logging.getLogger("gachabot.engine")
_roll_logger = logging.getLogger("gachabot.engine.rolls")

MYTHIC_CATALOG_LIMIT = 250
POOL_RETRY_CAP = 1000
SEARCH_LIMIT = 20
GALLERY_LIMIT = 24
OWNERS_DEFAULT_LIMIT = 25
OWNERS_MAX_LIMIT = 100


# Results -------------------------------------------------------------------


@dataclass
class RollResult(OperationResult):
    user: Optional[UserRecord] = None
    requested: int = 0
    executed: int = 0
    results: List[rolls.DrawOutcome] = field(default_factory=list)
    hard_pity_count: int = 0
    soft_pity_count: int = 0
    pity_counter: int = 0
    soft_threshold: int = 0
    hard_threshold: int = 0

    @property
    def character(self) -> Optional[CharacterSnapshot]:
        return self.results[0].character if self.results else None

    @property
    def rolls_left(self) -> int:
        return self.user.rolls_left if self.user else 0


@dataclass
class DailyClaimResult(OperationResult):
    user: Optional[UserRecord] = None
    bonus: int = 0
    ms_remaining: int = 0
    next_claim_at: Optional[datetime] = None


@dataclass
class ProfileResult(OperationResult):
    user: Optional[UserRecord] = None
    unique_count: int = 0
    total_copies: int = 0
    pity_counter: int = 0
    soft_threshold: int = 0
    hard_threshold: int = 0


@dataclass
class InventoryResult(OperationResult):
    user: Optional[UserRecord] = None
    entries: List[InventoryEntry] = field(default_factory=list)


@dataclass(frozen=True)
class ContractRuleInfo:
    rule: ContractRule
    available_copies: int
    available_contracts: int


@dataclass
class ContractInfoResult(OperationResult):
    user: Optional[UserRecord] = None
    rarity_counts: Dict[Rarity, int] = field(default_factory=dict)
    max_per_command: int = 0
    rules: List[ContractRuleInfo] = field(default_factory=list)


@dataclass
class ContractResult(OperationResult):
    user: Optional[UserRecord] = None
    rule: Optional[ContractRule] = None
    requested: int = 0
    executed: int = 0
    max_per_command: int = 0
    max_by_inventory: int = 0
    consumed_copies: int = 0
    available_source_copies: int = 0
    remaining_source_copies: int = 0
    consumed_by_id: List[contracts.ConsumedStack] = field(default_factory=list)
    selection_used: bool = False
    rewards: List[CharacterSnapshot] = field(default_factory=list)


@dataclass
class TradeResult(OperationResult):
    offer: Optional[TradeOffer] = None
    offered_character: Optional[CharacterSnapshot] = None
    requested_character: Optional[CharacterSnapshot] = None
    duplicate: bool = False


@dataclass
class TradeListResult(OperationResult):
    incoming_pending: List[TradeOffer] = field(default_factory=list)
    outgoing_pending: List[TradeOffer] = field(default_factory=list)
    recent_resolved: List[TradeOffer] = field(default_factory=list)


@dataclass(frozen=True)
class Owner:
    user_id: str
    username: Optional[str]
    display_name: str
    count: int


@dataclass
class OwnersResult(OperationResult):
    query: str = ""
    character: Optional[CharacterSnapshot] = None
    owners: List[Owner] = field(default_factory=list)
    total_owners: int = 0


@dataclass
class CharacterDetailsResult(OperationResult):
    character: Optional[CharacterSnapshot] = None
    images: List[GalleryImage] = field(default_factory=list)


@dataclass(frozen=True)
class BoardRefreshInfo:
    has_board: bool
    is_ready: bool
    ms_remaining: int
    next_refresh_at: Optional[datetime]
    board_updated_at: Optional[datetime]


# Engine --------------------------------------------------------------------


class GachaEngine:
    """Owns the cached gacha state and serializes every read-modify-write on it.

    Lock order is always: user locks (sorted by id), then the state lock.
    Nothing is committed to the cache until the store write succeeded.
    """

    def __init__(
        self,
        store: GachaStore,
        provider: CatalogProvider,
        config: Optional[GachaConfig] = None,
        *,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.config = config or GachaConfig()
        self._rng = rng or random.Random()
        self._clock = clock or utc_now
        self.state = GachaState()
        self.pool: List[CharacterSnapshot] = []
        self.pool_by_id: Dict[str, CharacterSnapshot] = {}
        self._prefetched: Optional[board_mod.PrefetchedBoard] = None
        self._background: List[asyncio.Task] = []
        self._state_lock = asyncio.Lock()
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._flights = SingleFlight()

    # Lifecycle ---------------------------------------------------------

    async def bootstrap(self) -> None:
        await self.store.init()
        self.state = await self.store.get_gacha_state()
        if not self.board.characters:
            await self.ensure_board(force=True)
        self._spawn(self.ensure_mythic_catalog(), "mythic catalog warmup")

    async def close(self) -> None:
        for task in self._background:
            task.cancel()
        for task in self._background:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._background.clear()

    def _spawn(self, coro, label: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.append(task)

        def _done(finished: asyncio.Task) -> None:
            if finished in self._background:
                self._background.remove(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error("Background %s failed: %s", label, exc)

        task.add_done_callback(_done)
        return task

    # Locks and persistence helpers -----------------------------------

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    @contextlib.asynccontextmanager
    async def _locked(self, user_ids: Sequence[str], *, state: bool = False):
        async with contextlib.AsyncExitStack() as stack:
            for user_id in sorted(set(user_ids)):
                await stack.enter_async_context(self._user_lock(user_id))
            if state:
                await stack.enter_async_context(self._state_lock)
            yield

    async def _commit_state(self, new_state: GachaState) -> None:
        await self.store.save_gacha_state(new_state)
        self.state = new_state

    # Config-derived values -------------------------------------------

    @property
    def pity_rules(self) -> rolls.PityRules:
        return self.config.pity_rules

    @property
    def contract_rules(self) -> List[ContractRule]:
        return contracts.build_contract_rules(self.config.contract_costs)

    @property
    def board_refresh_interval(self) -> timedelta:
        return timedelta(minutes=max(1, self.config.board_refresh_minutes))

    @property
    def board_prefetch_window(self) -> timedelta:
        return min(self.board_refresh_interval, timedelta(minutes=max(1, self.config.board_prefetch_minutes)))

    @property
    def mythic_refresh_interval(self) -> timedelta:
        return timedelta(minutes=max(10, self.config.mythic_catalog_refresh_minutes))

    # Catalog ---------------------------------------------------------

    def _set_pool(self, characters: List[CharacterSnapshot]) -> None:
        self.pool = characters
        self.pool_by_id = catalog.by_id(characters)

    def _known_characters(self) -> Dict[str, CharacterSnapshot]:
        known = catalog.by_id(self.board.characters)
        known.update(self.pool_by_id)
        return known

    async def ensure_character_pool(self, force: bool = False) -> List[CharacterSnapshot]:
        if not force and self.pool:
            return list(self.pool)
        return await self._flights.run("pool", self._sync_pool)

    async def _sync_pool(self) -> List[CharacterSnapshot]:
        pool_size = max(1, self.config.pool_size)
        board_size = max(1, self.config.board_size)
        primary = max(pool_size, board_size * 2)
        retry = max(board_size * 2, min(POOL_RETRY_CAP, pool_size))

        fetched: List[CharacterSnapshot] = []
        has_real_data = False
        for target in dict.fromkeys((primary, retry)):
            try:
                candidate = await self.provider.fetch_pool(target)
            except ProviderError as exc:
                logger.error("Could not fetch character pool (target=%d): %s", target, exc)
                continue
            logger.info("Fetched %d catalog characters (target=%d)", len(candidate), target)
            fetched = candidate
            has_real_data = any(not character.is_fallback for character in candidate)
            if has_real_data:
                break
            logger.warning("Fallback-only catalog received (target=%d); retrying", target)

        if not fetched:
            return list(self.pool)
        if not has_real_data and self.pool:
            logger.warning("Catalog fetch returned fallback-only data; keeping current pool")
            return list(self.pool)

        merged = catalog.sort_for_pool(catalog.merge_character_lists(fetched[:pool_size]))
        classified = catalog.assign_rarity_and_weight(merged)
        logger.debug("Pool sources: %s", dict(catalog.summarize_sources(classified)))

        async with self._state_lock:
            new_state = self.state.copy()
            new_state.pool_updated_at = self._clock()
            await self._commit_state(new_state)
        self._set_pool(classified)
        return list(self.pool)

    async def ensure_mythic_catalog(self, force: bool = False) -> List[CharacterSnapshot]:
        return await self._flights.run("mythic", lambda: self._sync_mythic_catalog(force))

    async def _sync_mythic_catalog(self, force: bool) -> List[CharacterSnapshot]:
        cached = catalog.sort_by_ranking(self.state.mythic_characters)[:MYTHIC_CATALOG_LIMIT]
        updated_at = self.state.mythic_catalog_updated_at
        stale = updated_at is None or self._clock() - updated_at >= self.mythic_refresh_interval
        if not force and len(cached) >= MYTHIC_CATALOG_LIMIT and not stale:
            logger.debug("Mythic catalog loaded from cache (%d characters)", len(cached))
            return cached

        try:
            fetched = await self.provider.fetch_top_ranked(MYTHIC_CATALOG_LIMIT)
        except ProviderError as exc:
            logger.error("Could not fetch mythic catalog: %s", exc)
            fetched = []
        mythics = catalog.sort_by_ranking(catalog.force_rarity(fetched, Rarity.MYTHIC))[:MYTHIC_CATALOG_LIMIT]
        if not mythics:
            return cached

        async with self._state_lock:
            new_state = self.state.copy()
            new_state.mythic_characters = mythics
            new_state.mythic_catalog_updated_at = self._clock()
            await self._commit_state(new_state)
        logger.info("Mythic catalog saved (%d characters)", len(mythics))
        return list(mythics)

    async def get_mythic_catalog(self) -> List[CharacterSnapshot]:
        characters = await self.ensure_mythic_catalog()
        return catalog.sort_by_ranking(characters)[:MYTHIC_CATALOG_LIMIT]

    async def get_characters_by_rarity(self, rarity: object) -> List[CharacterSnapshot]:
        target = Rarity.parse(rarity)
        if target is None:
            return []
        pool = await self.ensure_character_pool()
        return catalog.characters_of_rarity(pool, target)

    # Board -----------------------------------------------------------

    @property
    def board(self) -> Board:
        characters = self.state.board_characters
        if not characters and self.state.board_character_ids:
            characters = [self.pool_by_id[key] for key in self.state.board_character_ids if key in self.pool_by_id]
        return Board(tuple(board_mod.sort_board(characters)), self.state.board_updated_at)

    def _build_board(self, pool: Sequence[CharacterSnapshot]) -> List[CharacterSnapshot]:
        return board_mod.build_board_snapshot(
            pool,
            self.config.board_size,
            self.config.featured_board_boost_percent,
            rng=self._rng,
        )

    async def _save_board_state(self, characters: Sequence[CharacterSnapshot]) -> Board:
        ordered = board_mod.sort_board(characters)
        if not ordered:
            return self.board
        async with self._state_lock:
            new_state = self.state.copy()
            new_state.board_characters = list(ordered)
            new_state.board_character_ids = [character.id for character in ordered]
            new_state.board_updated_at = self._clock()
            await self._commit_state(new_state)
            self._prefetched = None
        logger.info("Board refreshed with %d characters", len(ordered))
        return self.board

    def _matching_prefetch(self) -> Optional[board_mod.PrefetchedBoard]:
        if self._prefetched is not None and self._prefetched.matches(self.state.board_updated_at):
            return self._prefetched
        return None

    async def ensure_board(self, force: bool = False) -> Board:
        """Return the active board, rebuilding it when stale, fallback-only or forced."""
        current = self.board
        now = self._clock()
        remaining = board_mod.time_remaining(current.updated_at, self.board_refresh_interval, now)
        fallback_only = bool(current.characters) and all(c.is_fallback for c in current.characters)

        if not force and current.characters and remaining > timedelta(0) and not fallback_only:
            if timedelta(0) < remaining <= self.board_prefetch_window and not self._matching_prefetch():
                if not self._flights.in_flight("prefetch"):
                    self._spawn(self.prefetch_next_board(), "board prefetch")
            return current

        if force:
            self._prefetched = None
            return await self._rebuild_board(force=True)
        return await self._flights.run("board", lambda: self._rebuild_board(force=False))

    async def _rebuild_board(self, force: bool) -> Board:
        current = self.board
        seeded = False
        if not self.pool and current.characters:
            self._set_pool(catalog.assign_rarity_and_weight(catalog.sort_for_pool(current.characters)))
            seeded = True

        prefetched = None if force else self._matching_prefetch()
        if prefetched is not None:
            logger.info("Activating prefetched board")
            characters = list(prefetched.characters)
        else:
            pool = await self.ensure_character_pool(force or seeded)
            if not pool:
                logger.warning("No catalog available; keeping the current board")
                return current
            characters = self._build_board(pool)

        if not characters:
            return current
        return await self._save_board_state(characters)

    async def prefetch_next_board(self) -> Optional[List[CharacterSnapshot]]:
        """Build the next board ahead of time when the current one is about to expire."""
        base = self.state.board_updated_at
        if base is None or not self.state.board_characters:
            return None
        remaining = board_mod.time_remaining(base, self.board_refresh_interval, self._clock())
        if remaining <= timedelta(0) or remaining > self.board_prefetch_window:
            return None
        existing = self._matching_prefetch()
        if existing is not None:
            return list(existing.characters)
        return await self._flights.run("prefetch", lambda: self._prefetch_for(base))

    async def _prefetch_for(self, base: datetime) -> Optional[List[CharacterSnapshot]]:
        pool = await self.ensure_character_pool()
        if not pool:
            return None
        characters = self._build_board(pool)
        if not characters or self.state.board_updated_at != base:
            return None
        self._prefetched = board_mod.PrefetchedBoard(
            base_updated_at=base,
            characters=tuple(board_mod.sort_board(characters)),
            prefetched_at=self._clock(),
        )
        logger.info("Prefetched next board (%d characters)", len(characters))
        return list(self._prefetched.characters)

    async def refresh_board(self) -> Board:
        prefetched = self._matching_prefetch()
        if prefetched is not None:
            logger.info("Manual refresh using prefetched board")
            return await self._save_board_state(prefetched.characters)
        return await self.ensure_board(force=True)

    def get_board_refresh_info(self) -> BoardRefreshInfo:
        current = self.board
        if not current.characters or current.updated_at is None:
            return BoardRefreshInfo(
                has_board=False,
                is_ready=True,
                ms_remaining=0,
                next_refresh_at=None,
                board_updated_at=current.updated_at,
            )
        next_refresh = current.updated_at + self.board_refresh_interval
        remaining = max(timedelta(0), next_refresh - self._clock())
        return BoardRefreshInfo(
            has_board=True,
            is_ready=remaining <= timedelta(0),
            ms_remaining=int(remaining.total_seconds() * 1000),
            next_refresh_at=next_refresh,
            board_updated_at=current.updated_at,
        )

    # Users -----------------------------------------------------------

    async def sync_user(self, user_id: str, meta: Optional[UserMeta] = None) -> Tuple[UserRecord, bool]:
        """Load a user, applying the daily reset, metadata and field repairs.

        Returns the record and whether it differs from what is stored.
        """
        meta = meta or UserMeta()
        today = today_key(self.config.timezone, self._clock())
        stored = await self.store.get_user(user_id)
        if stored is None:
            user = UserRecord(
                username=meta.username,
                display_name=meta.display_name,
                last_reset=today,
                rolls_left=self.config.rolls_per_day,
            )
            return user, True

        before = stored.to_dict()
        user = stored.copy()
        if meta.username and user.username != meta.username:
            user.username = meta.username
        if meta.display_name and user.display_name != meta.display_name:
            user.display_name = meta.display_name
        if not user.display_name and user.username:
            user.display_name = user.username
        if user.last_reset != today:
            user.last_reset = today
            user.rolls_left = self.config.rolls_per_day
        if user.rolls_left < 0:
            user.rolls_left = 0
        user.mythic_pity_counter = self.pity_rules.clamp_counter(user.mythic_pity_counter)
        return user, user.to_dict() != before

    async def _load_user(self, user_id: str, meta: Optional[UserMeta] = None) -> Tuple[UserRecord, bool]:
        user, changed = await self.sync_user(user_id, meta)
        inventory_changed = inventory.normalize_inventory(user, self._known_characters())
        return user, changed or inventory_changed

    async def _save_if_changed(self, user_id: str, user: UserRecord, changed: bool) -> None:
        if changed:
            await self.store.save_user(user_id, user)

    async def get_profile(self, user_id: str, meta: Optional[UserMeta] = None) -> ProfileResult:
        async with self._locked([user_id]):
            user, changed = await self.sync_user(user_id, meta)
            await self._save_if_changed(user_id, user, changed)
        summary = inventory.summarize(user)
        rules = self.pity_rules
        return ProfileResult(
            user=user,
            unique_count=summary.unique_count,
            total_copies=summary.total_copies,
            pity_counter=user.mythic_pity_counter,
            soft_threshold=rules.soft_threshold,
            hard_threshold=rules.hard_threshold,
        )

    async def get_inventory(self, user_id: str, meta: Optional[UserMeta] = None) -> InventoryResult:
        async with self._locked([user_id]):
            user, changed = await self._load_user(user_id, meta)
            await self._save_if_changed(user_id, user, changed)
        return InventoryResult(user=user, entries=inventory.sorted_entries(user))

    async def claim_daily(self, user_id: str, meta: Optional[UserMeta] = None) -> DailyClaimResult:
        cooldown = timedelta(minutes=self.config.daily_cooldown_minutes)
        async with self._locked([user_id]):
            user, changed = await self.sync_user(user_id, meta)
            now = self._clock()
            last = user.last_daily_claim_at
            if last is not None and now - last < cooldown:
                await self._save_if_changed(user_id, user, changed)
                remaining = cooldown - (now - last)
                return DailyClaimResult(
                    user=user,
                    ms_remaining=int(remaining.total_seconds() * 1000),
                    next_claim_at=last + cooldown,
                ).fail(ErrorKind.INSUFFICIENT_RESOURCE, "You can't claim your daily bonus yet.")

            bonus = self.config.daily_roll_bonus
            user.rolls_left += bonus
            user.last_daily_claim_at = now
            await self.store.save_user(user_id, user)
        logger.info("User %s claimed %d daily rolls", user_id, bonus)
        return DailyClaimResult(user=user, bonus=bonus, next_claim_at=now + cooldown)

    # Rolls -----------------------------------------------------------

    async def roll(self, user_id: str, meta: Optional[UserMeta] = None) -> RollResult:
        return await self.roll_many(user_id, 1, meta)

    async def roll_many(self, user_id: str, count: int = 1, meta: Optional[UserMeta] = None) -> RollResult:
        await self.ensure_board()
        rules = self.pity_rules
        requested = max(1, int(count or 1))
        result = RollResult(
            requested=requested,
            soft_threshold=rules.soft_threshold,
            hard_threshold=rules.hard_threshold,
        )

        async with self._locked([user_id]):
            user, changed = await self.sync_user(user_id, meta)
            result.user = user
            result.pity_counter = user.mythic_pity_counter
            if user.rolls_left <= 0:
                await self._save_if_changed(user_id, user, changed)
                return result.fail(ErrorKind.INSUFFICIENT_RESOURCE, "No rolls left for today.")

            characters = list(self.board.characters)
            if not characters:
                await self._save_if_changed(user_id, user, changed)
                return result.fail(ErrorKind.NOT_FOUND, "There is no active board to roll on.")

            executed = min(requested, user.rolls_left)
            for _ in range(executed):
                outcome = rolls.draw(characters, user.mythic_pity_counter, rules, rng=self._rng)
                user.rolls_left -= 1
                user.total_rolls += 1
                user.mythic_pity_counter = outcome.pity_after
                inventory.upsert(user, outcome.character)
                result.results.append(outcome)
                if outcome.hard_pity:
                    result.hard_pity_count += 1
                elif outcome.soft_pity:
                    result.soft_pity_count += 1
                _roll_logger.debug(
                    "user=%s drew %s (%s) pity %d->%d hard=%s soft=%.2f%%",
                    user_id,
                    outcome.character.id,
                    outcome.character.rarity.value,
                    outcome.pity_before,
                    outcome.pity_after,
                    outcome.hard_pity,
                    outcome.soft_bonus_percent,
                )

            user.last_roll_at = self._clock()
            await self.store.save_user(user_id, user)

        result.executed = executed
        result.pity_counter = user.mythic_pity_counter
        return result

    # Contracts -------------------------------------------------------

    async def get_contract_info(self, user_id: str, meta: Optional[UserMeta] = None) -> ContractInfoResult:
        await self.ensure_character_pool()
        async with self._locked([user_id]):
            user, changed = await self._load_user(user_id, meta)
            await self._save_if_changed(user_id, user, changed)
        counts = inventory.counts_by_rarity(user.inventory.values())
        return ContractInfoResult(
            user=user,
            rarity_counts=counts,
            max_per_command=self.config.contract_max_per_command,
            rules=[
                ContractRuleInfo(
                    rule=rule,
                    available_copies=counts[rule.from_rarity],
                    available_contracts=contracts.max_contracts(counts[rule.from_rarity], rule.cost),
                )
                for rule in self.contract_rules
            ],
        )

    async def execute_contract(
        self,
        user_id: str,
        from_rarity: object,
        requested: int = 1,
        meta: Optional[UserMeta] = None,
        materials: Optional[Sequence[contracts.MaterialSelection]] = None,
    ) -> ContractResult:
        await self.ensure_character_pool()
        rule = contracts.rule_for(self.contract_rules, from_rarity)
        if rule is None:
            return ContractResult().fail(ErrorKind.VALIDATION, "Invalid rarity for a contract.")

        picks = contracts.normalize_material_selection(materials or [])
        if picks and rule.from_rarity not in contracts.MANUAL_SELECTION_RARITIES:
            return ContractResult(rule=rule).fail(
                ErrorKind.VALIDATION, "Manual material selection is only available for epic and legendary contracts."
            )

        requested = max(1, int(requested or 1))
        max_per_command = self.config.contract_max_per_command
        result = ContractResult(
            rule=rule,
            requested=requested,
            max_per_command=max_per_command,
            selection_used=bool(picks),
        )

        async with self._locked([user_id]):
            user, changed = await self._load_user(user_id, meta)
            result.user = user
            available = inventory.counts_by_rarity(user.inventory.values())[rule.from_rarity]
            result.available_source_copies = available
            result.max_by_inventory = contracts.max_contracts(available, rule.cost)
            if result.max_by_inventory <= 0:
                await self._save_if_changed(user_id, user, changed)
                return result.fail(
                    ErrorKind.INSUFFICIENT_RESOURCE,
                    f"You need {rule.cost} {rule.from_rarity.label} copies for 1 contract. You have {available}.",
                )
            executed = contracts.executable_contracts(requested, max_per_command, available, rule.cost)

            reward_pool = catalog.characters_of_rarity(self.pool, rule.to_rarity)
            if not reward_pool:
                reward_pool = catalog.characters_of_rarity(await self.ensure_character_pool(force=True), rule.to_rarity)
            if not reward_pool:
                await self._save_if_changed(user_id, user, changed)
                return result.fail(
                    ErrorKind.INSUFFICIENT_RESOURCE,
                    f"No {rule.to_rarity.label} characters are available for contracts right now.",
                )

            copies = executed * rule.cost
            if picks:
                consumption = contracts.consume_selected(user, rule.from_rarity, copies, picks)
            else:
                consumption = contracts.consume_automatically(user, rule.from_rarity, copies)
            if not consumption.ok:
                kind = ErrorKind.VALIDATION if picks else ErrorKind.INSUFFICIENT_RESOURCE
                return result.fail(kind, consumption.error or "Could not consume the contract materials.")

            rewards = contracts.draw_rewards(reward_pool, executed, rng=self._rng)
            for reward in rewards:
                inventory.upsert(user, reward)
            await self.store.save_user(user_id, user)

        logger.info(
            "User %s executed %d %s->%s contracts",
            user_id,
            executed,
            rule.from_rarity.value,
            rule.to_rarity.value,
        )
        result.executed = executed
        result.consumed_copies = consumption.consumed
        result.remaining_source_copies = max(0, available - consumption.consumed)
        result.consumed_by_id = consumption.consumed_by_id
        result.rewards = rewards
        return result

    # Trades ----------------------------------------------------------

    def _swept_state(self) -> Tuple[GachaState, bool]:
        swept = trades.sweep(self.state.trade_offers, self._clock())
        new_state = self.state.copy()
        new_state.trade_offers = swept.offers
        return new_state, swept.changed

    async def _commit_if(self, new_state: GachaState, changed: bool) -> None:
        if changed:
            await self._commit_state(new_state)

    def _trade_expiry(self) -> timedelta:
        return trades.TRADE_OFFER_TTL

    async def create_trade_offer(
        self,
        proposer_id: str,
        target_id: str,
        offered_query: str,
        requested_query: str,
        proposer_meta: Optional[UserMeta] = None,
        target_meta: Optional[UserMeta] = None,
    ) -> TradeResult:
        proposer_id = str(proposer_id or "").strip()
        target_id = str(target_id or "").strip()
        if not proposer_id or not target_id:
            return TradeResult().fail(ErrorKind.VALIDATION, "Invalid trade: both users are required.")
        if proposer_id == target_id:
            return TradeResult().fail(ErrorKind.VALIDATION, "You can't trade with yourself.")
        if (proposer_meta and proposer_meta.is_bot) or (target_meta and target_meta.is_bot):
            return TradeResult().fail(ErrorKind.VALIDATION, "Bots can't trade.")
        offered_query = str(offered_query or "").strip()
        requested_query = str(requested_query or "").strip()
        if not offered_query or not requested_query:
            return TradeResult().fail(ErrorKind.VALIDATION, "Say what you offer and what you want.")

        async with self._locked([proposer_id, target_id], state=True):
            new_state, changed = self._swept_state()
            offers = new_state.trade_offers
            if len(trades.pending_by_proposer(offers, proposer_id)) >= trades.MAX_PENDING_PER_USER:
                await self._commit_if(new_state, changed)
                return TradeResult().fail(
                    ErrorKind.INSUFFICIENT_RESOURCE,
                    f"You already have {trades.MAX_PENDING_PER_USER} pending trades. Cancel one or wait for answers.",
                )

            proposer, proposer_changed = await self._load_user(proposer_id, proposer_meta)
            target, target_changed = await self._load_user(target_id, target_meta)
            await self._save_if_changed(proposer_id, proposer, proposer_changed)
            await self._save_if_changed(target_id, target, target_changed)

            offered = inventory.find_entry_by_query(proposer.inventory.values(), offered_query)
            if offered is None:
                await self._commit_if(new_state, changed)
                return TradeResult().fail(
                    ErrorKind.NOT_FOUND, "Couldn't find the character you offer in your inventory."
                )
            requested = inventory.find_entry_by_query(target.inventory.values(), requested_query)
            if requested is None:
                await self._commit_if(new_state, changed)
                return TradeResult().fail(
                    ErrorKind.NOT_FOUND, "Couldn't find the requested character in the other user's inventory."
                )

            duplicate = trades.find_duplicate(
                offers, proposer_id, target_id, offered.character.id, requested.character.id
            )
            if duplicate is not None:
                await self._commit_if(new_state, changed)
                return TradeResult(
                    offer=duplicate,
                    offered_character=duplicate.offered_character,
                    requested_character=duplicate.requested_character,
                    duplicate=True,
                )

            now = self._clock()
            offer = TradeOffer(
                id=trades.create_trade_id(now, self._rng),
                proposer_id=proposer_id,
                target_id=target_id,
                offered_character_id=offered.character.id,
                requested_character_id=requested.character.id,
                offered_character=offered.character,
                requested_character=requested.character,
                created_at=now,
                expires_at=now + self._trade_expiry(),
                proposer_username=proposer.username,
                proposer_display_name=proposer.display_name or proposer.username,
                target_username=target.username,
                target_display_name=target.display_name or target.username,
            )
            new_state.trade_offers = trades.sort_offers([*offers, offer])
            await self._commit_state(new_state)

        logger.info("Trade %s created: %s -> %s", offer.id, proposer_id, target_id)
        return TradeResult(offer=offer, offered_character=offer.offered_character, requested_character=offer.requested_character)

    async def list_trade_offers_for_user(self, user_id: str, meta: Optional[UserMeta] = None) -> TradeListResult:
        user_id = str(user_id or "").strip()
        if not user_id:
            return TradeListResult()
        async with self._locked([user_id], state=True):
            user, changed = await self.sync_user(user_id, meta)
            await self._save_if_changed(user_id, user, changed)
            new_state, state_changed = self._swept_state()
            await self._commit_if(new_state, state_changed)
        listing = trades.listing_for(self.state.trade_offers, user_id)
        return TradeListResult(
            incoming_pending=listing.incoming_pending,
            outgoing_pending=listing.outgoing_pending,
            recent_resolved=listing.recent_resolved,
        )

    async def get_trade_offer(self, trade_id: str) -> Optional[TradeOffer]:
        async with self._state_lock:
            new_state, changed = self._swept_state()
            await self._commit_if(new_state, changed)
        offer = trades.find_offer(self.state.trade_offers, trade_id)
        return offer.copy() if offer else None

    async def accept_trade_offer(self, trade_id: str, accepter_id: str, meta: Optional[UserMeta] = None) -> TradeResult:
        trade_id = str(trade_id or "").strip()
        accepter_id = str(accepter_id or "").strip()
        if not trade_id:
            return TradeResult().fail(ErrorKind.VALIDATION, "Give the trade id.")
        if not accepter_id:
            return TradeResult().fail(ErrorKind.VALIDATION, "Invalid user for accepting a trade.")

        peek = trades.find_offer(self.state.trade_offers, trade_id)
        participants = [accepter_id] + ([peek.proposer_id, peek.target_id] if peek else [])

        async with self._locked(participants, state=True):
            new_state, changed = self._swept_state()
            offer = trades.find_offer(new_state.trade_offers, trade_id)
            failure = self._check_actionable(offer, trade_id)
            if failure is None and offer.target_id != accepter_id:
                failure = TradeResult(offer=offer).fail(
                    ErrorKind.AUTHORIZATION, "Only the target user can accept this trade."
                )
            if failure is None and offer.proposer_id not in participants:
                # The offer changed hands since the peek; refuse rather than lock out of order.
                failure = TradeResult(offer=offer).fail(ErrorKind.STALE_STATE, "The trade changed; try again.")
            if failure is not None:
                await self._commit_if(new_state, changed)
                return failure

            proposer, _ = await self._load_user(offer.proposer_id)
            accepter, _ = await self._load_user(offer.target_id, meta)
            if proposer.count_of(offer.offered_character_id) <= 0:
                await self._commit_if(new_state, changed)
                return TradeResult(offer=offer).fail(
                    ErrorKind.STALE_STATE,
                    f"The trade can't complete: <@{offer.proposer_id}> no longer has `{offer.offered_character_id}`.",
                )
            if accepter.count_of(offer.requested_character_id) <= 0:
                await self._commit_if(new_state, changed)
                return TradeResult(offer=offer).fail(
                    ErrorKind.STALE_STATE,
                    f"The trade can't complete: you no longer have `{offer.requested_character_id}`.",
                )

            proposer_before = await self.store.get_user(offer.proposer_id)
            given = inventory.consume(proposer, offer.offered_character_id, 1)
            received = inventory.consume(accepter, offer.requested_character_id, 1)
            offered_character = given.character.merge(offer.offered_character)
            requested_character = received.character.merge(offer.requested_character)
            inventory.upsert(proposer, requested_character)
            inventory.upsert(accepter, offered_character)

            await self.store.save_user(offer.proposer_id, proposer)
            try:
                await self.store.save_user(offer.target_id, accepter)
            except Exception:
                if proposer_before is not None:
                    logger.error("Rolling back proposer %s after failed trade write", offer.proposer_id)
                    await self.store.save_user(offer.proposer_id, proposer_before)
                raise

            offer.proposer_username = proposer.username
            offer.proposer_display_name = proposer.display_name or proposer.username
            offer.target_username = accepter.username
            offer.target_display_name = accepter.display_name or accepter.username
            offer.offered_character = offered_character
            offer.requested_character = requested_character
            offer.resolve(TradeStatus.ACCEPTED, self._clock())
            new_state.trade_offers = trades.replace_offer(new_state.trade_offers, offer)
            await self._commit_state(new_state)

        logger.info("Trade %s accepted", trade_id)
        return TradeResult(offer=offer, offered_character=offered_character, requested_character=requested_character)

    def _check_actionable(self, offer: Optional[TradeOffer], trade_id: str) -> Optional[TradeResult]:
        if offer is None:
            return TradeResult().fail(ErrorKind.NOT_FOUND, f"No trade with id `{trade_id}`.")
        if not offer.is_pending:
            return TradeResult(offer=offer).fail(
                ErrorKind.VALIDATION, f"Trade `{trade_id}` is no longer pending ({offer.status.value})."
            )
        return None

    async def _resolve_by_actor(
        self,
        trade_id: str,
        actor_id: str,
        meta: Optional[UserMeta],
        status: TradeStatus,
    ) -> TradeResult:
        trade_id = str(trade_id or "").strip()
        actor_id = str(actor_id or "").strip()
        if not trade_id:
            return TradeResult().fail(ErrorKind.VALIDATION, "Give the trade id.")
        if not actor_id:
            return TradeResult().fail(ErrorKind.VALIDATION, "Invalid user for this trade action.")

        async with self._locked([actor_id], state=True):
            user, user_changed = await self.sync_user(actor_id, meta)
            await self._save_if_changed(actor_id, user, user_changed)
            new_state, changed = self._swept_state()
            offer = trades.find_offer(new_state.trade_offers, trade_id)
            failure = self._check_actionable(offer, trade_id)
            if failure is None:
                if status is TradeStatus.REJECTED and offer.target_id != actor_id:
                    failure = TradeResult(offer=offer).fail(
                        ErrorKind.AUTHORIZATION, "Only the target user can reject this trade."
                    )
                elif status is TradeStatus.CANCELLED and offer.proposer_id != actor_id:
                    failure = TradeResult(offer=offer).fail(
                        ErrorKind.AUTHORIZATION, "Only the user who made the offer can cancel it."
                    )
            if failure is not None:
                await self._commit_if(new_state, changed)
                return failure

            if status is TradeStatus.REJECTED:
                offer.target_username = user.username
                offer.target_display_name = user.display_name or user.username
            else:
                offer.proposer_username = user.username
                offer.proposer_display_name = user.display_name or user.username
            offer.resolve(status, self._clock())
            new_state.trade_offers = trades.replace_offer(new_state.trade_offers, offer)
            await self._commit_state(new_state)

        logger.info("Trade %s %s by %s", trade_id, status.value, actor_id)
        return TradeResult(offer=offer)

    async def reject_trade_offer(self, trade_id: str, actor_id: str, meta: Optional[UserMeta] = None) -> TradeResult:
        return await self._resolve_by_actor(trade_id, actor_id, meta, TradeStatus.REJECTED)

    async def cancel_trade_offer(self, trade_id: str, actor_id: str, meta: Optional[UserMeta] = None) -> TradeResult:
        return await self._resolve_by_actor(trade_id, actor_id, meta, TradeStatus.CANCELLED)

    # Lookups ---------------------------------------------------------

    async def find_owners_by_character(self, query: str, limit: int = OWNERS_DEFAULT_LIMIT) -> OwnersResult:
        text = str(query or "").strip()
        if not text:
            return OwnersResult(query=text).fail(ErrorKind.VALIDATION, "Give a character name or id.")

        known = self._known_characters()
        users = await self.store.get_all_users()
        seen: Dict[str, CharacterSnapshot] = {}
        for _user_id, user in users:
            inventory.normalize_inventory(user, known)
            for entry in user.inventory.values():
                previous = seen.get(entry.character.id)
                seen[entry.character.id] = entry.character.merge(previous) if previous else entry.character

        candidates = list(seen.values())
        target = next((c for c in candidates if c.id.lower() == text.lower()), None)
        if target is None:
            target = catalog.find_best_character_match(text, candidates)
        if target is None:
            return OwnersResult(query=text)

        owners: List[Owner] = []
        for user_id, user in users:
            count = user.count_of(target.id)
            if count <= 0:
                continue
            owners.append(
                Owner(
                    user_id=user_id,
                    username=user.username,
                    display_name=user.display_name or user.username or f"User {user_id}",
                    count=count,
                )
            )
        owners.sort(key=lambda owner: (-owner.count, owner.display_name.lower()))
        safe_limit = max(1, min(OWNERS_MAX_LIMIT, int(limit or OWNERS_DEFAULT_LIMIT)))
        return OwnersResult(query=text, character=target, owners=owners[:safe_limit], total_owners=len(owners))

    async def find_character(self, query: str) -> Optional[CharacterSnapshot]:
        text = str(query or "").strip()
        if not text:
            return None
        characters = list(self.board.characters)
        if text.isdigit():
            index = int(text) - 1
            return characters[index] if 0 <= index < len(characters) else None

        match = catalog.find_best_character_match(text, characters)
        if match is not None:
            return match
        try:
            searched = await self.provider.search(text, SEARCH_LIMIT)
        except ProviderError as exc:
            logger.warning("Character search failed for %r: %s", text, exc)
            return None
        return catalog.find_best_character_match(text, searched) or (searched[0] if searched else None)

    async def get_character_details(self, query: str) -> CharacterDetailsResult:
        await self.ensure_board()
        character = await self.find_character(query)
        if character is None:
            return CharacterDetailsResult().fail(
                ErrorKind.NOT_FOUND, "Character not found. Use `!gacha list` to see board positions."
            )
        images: List[GalleryImage] = []
        try:
            images = await self.provider.fetch_gallery(character, GALLERY_LIMIT)
        except ProviderError as exc:
            logger.error("Could not fetch gallery for %s: %s", character.id, exc)
        return CharacterDetailsResult(character=character, images=images)


__all__ = [
    "BoardRefreshInfo",
    "CharacterDetailsResult",
    "ContractInfoResult",
    "ContractResult",
    "ContractRuleInfo",
    "DailyClaimResult",
    "GachaEngine",
    "InventoryResult",
    "MYTHIC_CATALOG_LIMIT",
    "Owner",
    "OwnersResult",
    "ProfileResult",
    "RollResult",
    "TradeListResult",
    "TradeResult",
]
