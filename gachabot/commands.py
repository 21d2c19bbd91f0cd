"""Discord prefix commands for the gacha engine (``!gacha <subcommand>``)."""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import discord
from discord.ext import commands

from .config import GachaConfig
from .contracts import MANUAL_SELECTION_RARITIES, parse_material_list
from .engine import GachaEngine, RollResult
from .models import CharacterSnapshot, Rarity, TradeOffer, UserMeta
from .utils import format_duration, utc_now

logger = logging.getLogger("gachabot.commands")

MAX_ROLLS_PER_COMMAND = 50
MAX_CONTRACT_PREVIEW = 8
MAX_TRADE_PREVIEW_LINES = 8
MAX_RECENT_TRADE_LINES = 5
MYTHICS_PAGE_SIZE = 15
MAX_MESSAGE_LENGTH = 1900

SUBCOMMAND_ALIASES: Dict[str, Tuple[str, ...]] = {
    "help": ("help",),
    "board": ("board",),
    "list": ("list",),
    "mythics": ("mythic", "mythics"),
    "roll": ("roll", "pull"),
    "daily": ("daily", "claim", "reward"),
    "timer": ("timer", "timeleft", "refreshin", "boardtimer", "nextboard"),
    "profile": ("profile", "stats"),
    "inventory": ("inv", "inventory", "collection"),
    "contract": ("contract", "tradeup", "exchange"),
    "trade": ("trade", "trades", "swap", "intercambio"),
    "character": ("character", "char"),
    "refreshboard": ("refreshboard", "resetboard"),
}

TRADE_ACTION_ALIASES: Dict[str, Tuple[str, ...]] = {
    "help": ("help", "ayuda"),
    "list": ("list", "ls", "status", "pending", "pendings"),
    "offer": ("offer", "propose", "create", "crear", "proponer"),
    "accept": ("accept", "aceptar", "ok"),
    "reject": ("reject", "rechazar", "deny", "decline"),
    "cancel": ("cancel", "cancelar", "remove"),
}

CONTRACT_RARITY_ALIASES: Dict[str, Rarity] = {
    "common": Rarity.COMMON,
    "c": Rarity.COMMON,
    "comun": Rarity.COMMON,
    "rare": Rarity.RARE,
    "r": Rarity.RARE,
    "raro": Rarity.RARE,
    "epic": Rarity.EPIC,
    "e": Rarity.EPIC,
    "epico": Rarity.EPIC,
    "legendary": Rarity.LEGENDARY,
    "l": Rarity.LEGENDARY,
    "legendario": Rarity.LEGENDARY,
}

_MENTION = re.compile(r"^<@!?(\d+)>$")
_FLAG_PAIR = re.compile(r"--(give|want)\s+(\"[^\"]+\"|'[^']+'|.+?)(?=\s--(?:give|want)\b|$)", re.IGNORECASE | re.DOTALL)
_QUOTED = re.compile(r"\"([^\"]+)\"|'([^']+)'")
_OFFER_SEPARATORS = (
    re.compile(r"\s+por\s+", re.IGNORECASE),
    re.compile(r"\s+for\s+", re.IGNORECASE),
    re.compile(r"\s*->\s*"),
    re.compile(r"\s*=>\s*"),
)
_CONTRACT_USAGE = "contract <common|rare|epic|legendary> [count] [--pick id[:copies],id[:copies],...]"


# Argument parsing ----------------------------------------------------------


def _fold(value: object) -> str:
    text = unicodedata.normalize("NFD", str(value or "").strip().lower())
    return "".join(ch for ch in text if not unicodedata.combining(ch))


def _resolve_alias(raw: object, table: Dict[str, Tuple[str, ...]], default: str) -> str:
    token = re.sub(r"[^a-z0-9]", "", _fold(raw if raw else default))
    for canonical, aliases in table.items():
        if token in aliases:
            return canonical
    return "unknown"


def normalize_subcommand(raw: Optional[str]) -> str:
    return _resolve_alias(raw, SUBCOMMAND_ALIASES, "help")


def normalize_trade_action(raw: Optional[str]) -> str:
    return _resolve_alias(raw, TRADE_ACTION_ALIASES, "help")


def normalize_contract_rarity(raw: Optional[str]) -> Optional[Rarity]:
    return CONTRACT_RARITY_ALIASES.get(_fold(raw))


def parse_roll_count(raw: Optional[str]) -> Optional[int]:
    """Parse a positive count; a missing token means 1, anything invalid is None."""
    if raw is None:
        return 1
    try:
        value = int(str(raw).strip())
    except ValueError:
        return None
    return value if value > 0 else None


def extract_mentioned_user_id(raw: Optional[str]) -> Optional[str]:
    match = _MENTION.match(str(raw or "").strip())
    return match.group(1) if match else None


def unwrap_quoted(raw: str) -> str:
    value = str(raw or "").strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1].strip()
    return value


def _split_once(text: str, pattern: "re.Pattern[str]") -> Optional[Tuple[str, str]]:
    match = pattern.search(text)
    if not match:
        return None
    left = text[: match.start()].strip()
    right = text[match.end():].strip()
    if not left or not right:
        return None
    return left, right


@dataclass(frozen=True)
class TradeOfferDetails:
    give: Optional[str] = None
    want: Optional[str] = None
    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.error is None


def parse_trade_offer_details(raw: str) -> TradeOfferDetails:
    """Read what the proposer gives and wants from free text.

    Accepted shapes, in priority order: ``--give X --want Y``, ``X por Y``,
    ``X for Y``, ``X -> Y``, ``X => Y``, two quoted values, or exactly two
    bare tokens.
    """
    text = str(raw or "").strip()
    if not text:
        return TradeOfferDetails(
            error='Say what you give and what you want, e.g. `--give "Shigeo Kageyama" --want "Light Yagami"`.'
        )

    flags: Dict[str, str] = {}
    for match in _FLAG_PAIR.finditer(text):
        value = unwrap_quoted(match.group(2))
        if value:
            flags[match.group(1).lower()] = value
    if flags.get("give") and flags.get("want"):
        return TradeOfferDetails(give=flags["give"], want=flags["want"])

    for separator in _OFFER_SEPARATORS:
        parts = _split_once(text, separator)
        if parts:
            return TradeOfferDetails(give=unwrap_quoted(parts[0]), want=unwrap_quoted(parts[1]))

    quoted = [value.strip() for pair in _QUOTED.findall(text) for value in pair if value.strip()]
    if len(quoted) >= 2:
        return TradeOfferDetails(give=quoted[0], want=quoted[1])

    tokens = text.split()
    if len(tokens) == 2:
        return TradeOfferDetails(give=unwrap_quoted(tokens[0]), want=unwrap_quoted(tokens[1]))

    return TradeOfferDetails(
        error="Couldn't read that offer. Use `--give <your character>` and `--want <their character>`."
    )


def split_contract_args(args: Sequence[str]) -> Tuple[Optional[int], str]:
    """Split ``[count] [--pick ...]`` into (count or None when invalid, material text)."""
    if not args:
        return 1, ""
    first = args[0].strip()
    if first.isdigit():
        count = int(first)
        return (count if count > 0 else None), " ".join(args[1:])
    return 1, " ".join(args)


def can_refresh_board(author_id: object, config: GachaConfig) -> Tuple[bool, Optional[str]]:
    admin = str(config.admin_user_id or "").strip()
    if not admin:
        return False, (
            "No admin is configured. Set GACHA_ADMIN_USER_ID to your Discord id "
            f"(yours is {author_id})."
        )
    if str(author_id) != admin:
        return False, "You don't have permission to use this command."
    return True, None


# Formatting ----------------------------------------------------------------


def character_label(character: Optional[CharacterSnapshot], fallback_id: str = "") -> str:
    if character is None:
        return fallback_id or "Unknown"
    if character.name and character.anime:
        return f"{character.name} ({character.anime})"
    return character.name or character.id or fallback_id or "Unknown"


def _trade_expiry(offer: TradeOffer, now: datetime) -> str:
    if offer.expires_at is None:
        return ""
    remaining = (offer.expires_at - now).total_seconds() * 1000
    if remaining <= 0:
        return " | expired"
    return f" | expires in {format_duration(remaining)}"


def format_trade_line(offer: TradeOffer, mode: str, now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    give = character_label(offer.offered_character, offer.offered_character_id)
    want = character_label(offer.requested_character, offer.requested_character_id)
    if mode == "incoming":
        return f"- `{offer.id}` <@{offer.proposer_id}> offers **{give}** for **{want}**{_trade_expiry(offer, now)}"
    if mode == "outgoing":
        return f"- `{offer.id}` You offer **{give}** to <@{offer.target_id}> for **{want}**{_trade_expiry(offer, now)}"
    return (
        f"- `{offer.id}` {offer.status.value.title()}: <@{offer.proposer_id}> -> <@{offer.target_id}>"
        f" | **{give}** for **{want}**"
    )


def limit_lines(lines: Sequence[str], max_lines: int = MAX_TRADE_PREVIEW_LINES) -> List[str]:
    if len(lines) <= max_lines:
        return list(lines)
    return [*lines[:max_lines], f"... and {len(lines) - max_lines} more"]


def sort_roll_results(result: RollResult) -> List[Tuple[int, CharacterSnapshot]]:
    """Number draws from 1, then order rarest first for display."""
    numbered = [(index + 1, outcome.character) for index, outcome in enumerate(result.results)]
    return sorted(
        numbered,
        key=lambda item: (
            -item[1].rarity.rank,
            item[1].popularity_rank or float("inf"),
            -item[1].favorites,
            item[0],
        ),
    )


def format_board_lines(characters: Iterable[CharacterSnapshot]) -> List[str]:
    lines = []
    for index, character in enumerate(characters, start=1):
        featured = " *featured*" if character.featured else ""
        lines.append(
            f"{index}. [{character.rarity.label}] {character_label(character)} "
            f"w={character.drop_weight:g}{featured}"
        )
    return lines


def chunk_lines(lines: Iterable[str], limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    chunks: List[str] = []
    current: List[str] = []
    size = 0
    for line in lines:
        line = line[:limit]
        if current and size + len(line) + 1 > limit:
            chunks.append("\n".join(current))
            current, size = [], 0
        current.append(line)
        size += len(line) + 1
    if current:
        chunks.append("\n".join(current))
    return chunks


def help_text(prefix: str) -> str:
    p = f"{prefix}gacha"
    return "\n".join(
        [
            "**Gacha Commands**",
            f"- `{p} board` / `{p} list` - Show the current board.",
            f"- `{p} mythics [page]` - Browse the mythic catalog.",
            f"- `{p} roll [count]` - Roll on the board (up to {MAX_ROLLS_PER_COMMAND} at once).",
            f"- `{p} daily` - Claim bonus rolls.",
            f"- `{p} timer` - Time until the next board.",
            f"- `{p} profile` - Your rolls, pity and collection stats.",
            f"- `{p} inventory [@user]` - Show a collection.",
            f"- `{p} {_CONTRACT_USAGE}` - Trade duplicates up a rarity.",
            f"- `{p} trade offer @user --give <yours> --want <theirs>` - Propose a swap.",
            f"- `{p} trade list|accept|reject|cancel [tradeId]` - Manage swaps.",
            f"- `{p} character <name|number>` - Character details.",
            f"- `{p} refreshboard` - (Admin) Rebuild the board now.",
        ]
    )


def _user_meta(user: discord.abc.User, member: Optional[discord.Member] = None) -> UserMeta:
    display = getattr(member, "display_name", None) or getattr(user, "global_name", None) or user.name
    return UserMeta.clean(user.name, display, is_bot=bool(getattr(user, "bot", False)))


# Command wiring ------------------------------------------------------------


class GachaCommands:
    """Dispatches ``!gacha`` subcommands to the engine and replies with plain text."""

    def __init__(self, bot: commands.Bot, engine: GachaEngine, config: GachaConfig) -> None:
        self.bot = bot
        self.engine = engine
        self.config = config
        self.prefix = config.command_prefix

    def _register_command(self, command: commands.Command) -> None:
        existing = self.bot.get_command(command.name)
        if existing:
            self.bot.remove_command(existing.name)
        self.bot.add_command(command)

    def register_commands(self) -> None:
        @commands.command(name="gacha")
        async def gacha(ctx: commands.Context, *, arguments: str = "") -> None:
            await self.dispatch(ctx, arguments.split())

        self._register_command(gacha)

    async def _reply(self, ctx: commands.Context, text: str) -> None:
        for chunk in chunk_lines(text.split("\n")):
            await ctx.reply(chunk, mention_author=False, allowed_mentions=discord.AllowedMentions.none())

    async def dispatch(self, ctx: commands.Context, args: List[str]) -> None:
        if ctx.author.bot or ctx.guild is None:
            return
        raw = args[0] if args else None
        subcommand = normalize_subcommand(raw)
        handler = getattr(self, f"command_{subcommand}", None)
        if handler is None:
            await self._reply(ctx, f"Unknown subcommand `{raw or ''}`. Use `{self.prefix}gacha help`.")
            return
        try:
            await handler(ctx, args[1:])
        except Exception:  # pylint: disable=broad-except
            logger.exception("Gacha command %s failed for %s", subcommand, ctx.author.id)
            await self._reply(ctx, "Something went wrong running that command.")

    async def command_help(self, ctx: commands.Context, args: List[str]) -> None:
        await self._reply(ctx, help_text(self.prefix))

    async def command_board(self, ctx: commands.Context, args: List[str]) -> None:
        board = await self.engine.ensure_board()
        if not board.characters:
            await self._reply(ctx, "There is no active board right now.")
            return
        info = self.engine.get_board_refresh_info()
        header = f"**Board** ({len(board)} characters, next refresh in {format_duration(info.ms_remaining)})"
        await self._reply(ctx, "\n".join([header, *format_board_lines(board.characters)]))

    command_list = command_board

    async def command_mythics(self, ctx: commands.Context, args: List[str]) -> None:
        page = parse_roll_count(args[0] if args else None)
        if page is None:
            await self._reply(ctx, f"Usage: `{self.prefix}gacha mythics [page]`.")
            return
        mythics = await self.engine.get_mythic_catalog()
        if not mythics:
            await self._reply(ctx, "There are no mythic characters in the catalog right now.")
            return
        pages = max(1, -(-len(mythics) // MYTHICS_PAGE_SIZE))
        page = min(page, pages)
        start = (page - 1) * MYTHICS_PAGE_SIZE
        lines = [f"**Mythic catalog** (page {page}/{pages})"]
        for index, character in enumerate(mythics[start:start + MYTHICS_PAGE_SIZE], start=start + 1):
            rank = f"#{character.popularity_rank}" if character.popularity_rank else "unranked"
            lines.append(f"{index}. {character_label(character)} {rank}")
        await self._reply(ctx, "\n".join(lines))

    async def command_roll(self, ctx: commands.Context, args: List[str]) -> None:
        requested = parse_roll_count(args[0] if args else None)
        if requested is None:
            await self._reply(ctx, f"Usage: `{self.prefix}gacha roll [count]`, e.g. `{self.prefix}gacha roll 10`.")
            return
        result = await self.engine.roll_many(
            str(ctx.author.id), min(requested, MAX_ROLLS_PER_COMMAND), _user_meta(ctx.author, ctx.author)
        )
        if not result.ok:
            await self._reply(ctx, f"{result.error} Rolls left: {result.rolls_left}")
            return

        lines = [f"**{ctx.author.display_name}** rolled {result.executed}/{requested}:"]
        for number, character in sort_roll_results(result):
            lines.append(f"#{number} [{character.rarity.label}] {character_label(character)}")
        if result.hard_pity_count:
            lines.append(f"Hard pity triggered {result.hard_pity_count} time(s).")
        if result.soft_pity_count:
            lines.append(f"Soft pity boosted {result.soft_pity_count} roll(s).")
        lines.append(
            f"Mythic pity: {result.pity_counter}/{result.hard_threshold} "
            f"(soft from {result.soft_threshold}) | Rolls left: {result.rolls_left}"
        )
        await self._reply(ctx, "\n".join(lines))

    async def command_daily(self, ctx: commands.Context, args: List[str]) -> None:
        result = await self.engine.claim_daily(str(ctx.author.id), _user_meta(ctx.author, ctx.author))
        if not result.ok:
            await self._reply(ctx, f"{result.error} Time left: {format_duration(result.ms_remaining)}")
            return
        await self._reply(ctx, f"Daily claimed: +{result.bonus} rolls. You now have {result.user.rolls_left} rolls.")

    async def command_timer(self, ctx: commands.Context, args: List[str]) -> None:
        info = self.engine.get_board_refresh_info()
        if not info.has_board:
            await self._reply(ctx, "There is no active board yet.")
            return
        await self._reply(ctx, f"Next board in {format_duration(info.ms_remaining)}.")

    async def command_profile(self, ctx: commands.Context, args: List[str]) -> None:
        profile = await self.engine.get_profile(str(ctx.author.id), _user_meta(ctx.author, ctx.author))
        user = profile.user
        await self._reply(
            ctx,
            "\n".join(
                [
                    f"**{user.display_name or ctx.author.name}**",
                    f"Rolls left: {user.rolls_left}",
                    f"Total rolls: {user.total_rolls}",
                    f"Unique characters: {profile.unique_count}",
                    f"Total copies: {profile.total_copies}",
                    f"Mythic pity: {profile.pity_counter}/{profile.hard_threshold} (soft from {profile.soft_threshold})",
                ]
            ),
        )

    async def command_inventory(self, ctx: commands.Context, args: List[str]) -> None:
        target: discord.abc.User = ctx.author
        member: Optional[discord.Member] = ctx.author if isinstance(ctx.author, discord.Member) else None
        if args:
            target_id = extract_mentioned_user_id(args[0])
            if target_id is None:
                await self._reply(ctx, f"Usage: `{self.prefix}gacha inventory [@user]`.")
                return
            member = ctx.guild.get_member(int(target_id))
            found = member or next((user for user in ctx.message.mentions if str(user.id) == target_id), None)
            if found is None:
                await self._reply(ctx, "I couldn't find that user.")
                return
            target = found

        meta = _user_meta(target, member)
        result = await self.engine.get_inventory(str(target.id), meta)
        name = meta.display_name or target.name
        if not result.entries:
            await self._reply(ctx, f"**{name}** has no characters yet.")
            return
        lines = [f"**{name}'s collection** ({len(result.entries)} unique)"]
        for entry in result.entries:
            lines.append(
                f"- [{entry.character.rarity.label}] {character_label(entry.character)} x{entry.count} `{entry.character.id}`"
            )
        await self._reply(ctx, "\n".join(lines))

    async def command_contract(self, ctx: commands.Context, args: List[str]) -> None:
        meta = _user_meta(ctx.author, ctx.author)
        if not args:
            info = await self.engine.get_contract_info(str(ctx.author.id), meta)
            lines = ["**Available contracts**"]
            for item in info.rules:
                rule = item.rule
                lines.append(
                    f"- {rule.from_rarity.label} -> {rule.to_rarity.label}: {rule.cost} {rule.from_rarity.label}"
                    f" | You have {item.available_copies} | Possible: {item.available_contracts}"
                )
            lines.append(f"Max per command: {info.max_per_command}")
            lines.append(f"Usage: `{self.prefix}gacha {_CONTRACT_USAGE}`")
            lines.append("Manual material picks apply to epic and legendary contracts.")
            await self._reply(ctx, "\n".join(lines))
            return

        source = normalize_contract_rarity(args[0])
        count, material_text = split_contract_args(args[1:])
        if source is None or count is None:
            await self._reply(ctx, f"Usage: `{self.prefix}gacha {_CONTRACT_USAGE}`.")
            return
        picks, error = parse_material_list(material_text)
        if error:
            await self._reply(ctx, error)
            return
        if picks and source not in MANUAL_SELECTION_RARITIES:
            await self._reply(ctx, "Manual material selection is only available for epic and legendary contracts.")
            return

        result = await self.engine.execute_contract(str(ctx.author.id), source, count, meta, picks)
        if not result.ok:
            await self._reply(ctx, result.error)
            return

        rule = result.rule
        reward_counts: Dict[str, int] = {}
        for reward in result.rewards:
            label = character_label(reward)
            reward_counts[label] = reward_counts.get(label, 0) + 1
        rewards = ", ".join(f"{label} x{n}" for label, n in list(reward_counts.items())[:MAX_CONTRACT_PREVIEW])
        lines = [
            f"Contract: {rule.from_rarity.label} -> {rule.to_rarity.label}",
            f"Executed: {result.executed}/{result.requested}",
            f"Consumed: {result.consumed_copies} {rule.from_rarity.label}",
            f"Remaining {rule.from_rarity.label}: {result.remaining_source_copies}",
        ]
        if result.selection_used:
            picked = ", ".join(
                f"{stack.character.name or stack.character_id} x{stack.count}"
                for stack in result.consumed_by_id[:MAX_CONTRACT_PREVIEW]
            )
            lines.append(f"Materials used: {picked or 'no detail'}")
        lines.append(f"Received: {rewards or 'nothing'}")
        if result.executed < result.requested:
            if result.executed >= result.max_per_command:
                lines.append(f"Limit per command: {result.max_per_command}.")
            if result.executed >= result.max_by_inventory:
                lines.append(f"Materials only covered {result.max_by_inventory} contract(s).")
        await self._reply(ctx, "\n".join(lines))

    def _trade_usage(self) -> List[str]:
        p = f"{self.prefix}gacha trade"
        return [
            f'Usage: `{p} offer @user --give "<your character or id>" --want "<their character or id>"`',
            f"Also: `{p} offer @user <yours> for <theirs>`",
            f"Manage: `{p} list`, `{p} accept <tradeId>`, `{p} reject <tradeId>`, `{p} cancel <tradeId>`",
        ]

    async def command_trade(self, ctx: commands.Context, args: List[str]) -> None:
        action = normalize_trade_action(args[0] if args else None)
        meta = _user_meta(ctx.author, ctx.author)
        user_id = str(ctx.author.id)

        if action == "help":
            await self._reply(ctx, "\n".join(self._trade_usage()))
            return

        if action == "list":
            listing = await self.engine.list_trade_offers_for_user(user_id, meta)
            incoming = limit_lines([format_trade_line(o, "incoming") for o in listing.incoming_pending])
            outgoing = limit_lines([format_trade_line(o, "outgoing") for o in listing.outgoing_pending])
            recent = limit_lines([format_trade_line(o, "history") for o in listing.recent_resolved], MAX_RECENT_TRADE_LINES)
            await self._reply(
                ctx,
                "\n".join(
                    [
                        "**Incoming trades (pending)**",
                        *(incoming or ["- None"]),
                        "",
                        "**Outgoing trades (pending)**",
                        *(outgoing or ["- None"]),
                        "",
                        "**Recently resolved**",
                        *(recent or ["- No history"]),
                    ]
                ),
            )
            return

        if action == "offer":
            await self._trade_offer(ctx, args[1:], meta)
            return

        if action in ("accept", "reject", "cancel"):
            await self._trade_resolve(ctx, action, args[1:], meta)
            return

        await self._reply(ctx, "\n".join([f"Unknown trade action `{args[0] if args else ''}`.", *self._trade_usage()]))

    async def _trade_offer(self, ctx: commands.Context, args: List[str], meta: UserMeta) -> None:
        own_id = self.bot.user.id if self.bot.user else None
        mentions = [user for user in ctx.message.mentions if user.id != own_id]
        if not mentions:
            await self._reply(ctx, "\n".join(["Mention the user you want to trade with.", *self._trade_usage()[:2]]))
            return
        target = mentions[0]
        if target.bot:
            await self._reply(ctx, "You can't trade with bots.")
            return
        details = parse_trade_offer_details(" ".join(token for token in args if not _MENTION.match(token)))
        if not details.valid:
            await self._reply(ctx, "\n".join([details.error, *self._trade_usage()[:2]]))
            return

        target_member = ctx.guild.get_member(target.id)
        result = await self.engine.create_trade_offer(
            str(ctx.author.id),
            str(target.id),
            details.give,
            details.want,
            proposer_meta=meta,
            target_meta=_user_meta(target, target_member),
        )
        if not result.ok:
            await self._reply(ctx, result.error)
            return
        offer = result.offer
        lines = [
            f"Trade {'already pending' if result.duplicate else 'created'}: `{offer.id}`.",
            f"You offer **{character_label(offer.offered_character, offer.offered_character_id)}** to "
            f"<@{offer.target_id}> for **{character_label(offer.requested_character, offer.requested_character_id)}**.",
            f"They can accept with `{self.prefix}gacha trade accept {offer.id}`.",
        ]
        if offer.expires_at is not None:
            remaining = (offer.expires_at - utc_now()).total_seconds() * 1000
            lines.append(f"Expires in {format_duration(remaining)}.")
        await self._reply(ctx, "\n".join(lines))

    async def _trade_resolve(self, ctx: commands.Context, action: str, args: List[str], meta: UserMeta) -> None:
        user_id = str(ctx.author.id)
        trade_id = args[0].strip() if args else ""
        if not trade_id:
            listing = await self.engine.list_trade_offers_for_user(user_id, meta)
            candidates = listing.outgoing_pending if action == "cancel" else listing.incoming_pending
            if not candidates:
                await self._reply(ctx, f"You have no pending trades for that. See `{self.prefix}gacha trade list`.")
                return
            if len(candidates) > 1:
                options = ", ".join(f"`{offer.id}`" for offer in candidates)
                await self._reply(ctx, f"You have several pending trades. Give an id: {options}")
                return
            trade_id = candidates[0].id

        if action == "accept":
            result = await self.engine.accept_trade_offer(trade_id, user_id, meta)
            if not result.ok:
                await self._reply(ctx, result.error)
                return
            offer = result.offer
            await self._reply(
                ctx,
                f"Trade `{offer.id}` accepted.\n"
                f"<@{offer.proposer_id}> receives **{character_label(result.requested_character)}** and "
                f"<@{offer.target_id}> receives **{character_label(result.offered_character)}**.",
            )
            return

        if action == "reject":
            result = await self.engine.reject_trade_offer(trade_id, user_id, meta)
        else:
            result = await self.engine.cancel_trade_offer(trade_id, user_id, meta)
        if not result.ok:
            await self._reply(ctx, result.error)
            return
        await self._reply(ctx, f"Trade `{result.offer.id}` {result.offer.status.value}.")

    async def command_character(self, ctx: commands.Context, args: List[str]) -> None:
        query = " ".join(args).strip()
        if not query:
            await self._reply(ctx, f"Usage: `{self.prefix}gacha character <name|number>`.")
            return
        details = await self.engine.get_character_details(query)
        if not details.ok:
            await self._reply(ctx, details.error)
            return
        character = details.character
        lines = [
            f"**{character.name}** ({character.anime})",
            f"Rarity: {character.rarity.label} | Favorites: {character.favorites:,}"
            + (f" | Rank #{character.popularity_rank}" if character.popularity_rank else ""),
            f"Id: `{character.id}`",
        ]
        lines.extend(image.url for image in details.images[:3])
        await self._reply(ctx, "\n".join(lines))

    async def command_refreshboard(self, ctx: commands.Context, args: List[str]) -> None:
        logger.info("refreshboard requested by %s", ctx.author.id)
        allowed, error = can_refresh_board(ctx.author.id, self.config)
        if not allowed:
            await self._reply(ctx, error)
            return
        board = await self.engine.refresh_board()
        await self._reply(ctx, f"Board rebuilt with {len(board)} characters.")


def setup_gacha_commands(bot: commands.Bot, engine: GachaEngine, config: GachaConfig) -> GachaCommands:
    """Factory used by bot.py to wire the ``!gacha`` command."""
    handler = GachaCommands(bot, engine, config)
    handler.register_commands()
    return handler


__all__ = [
    "CONTRACT_RARITY_ALIASES",
    "GachaCommands",
    "MAX_ROLLS_PER_COMMAND",
    "TradeOfferDetails",
    "can_refresh_board",
    "character_label",
    "chunk_lines",
    "extract_mentioned_user_id",
    "format_board_lines",
    "format_trade_line",
    "help_text",
    "limit_lines",
    "normalize_contract_rarity",
    "normalize_subcommand",
    "normalize_trade_action",
    "parse_roll_count",
    "parse_trade_offer_details",
    "setup_gacha_commands",
    "sort_roll_results",
    "split_contract_args",
    "unwrap_quoted",
]
