"""Trade offer bookkeeping: ids, lazy expiry, history trimming and listing."""

from __future__ import annotations

import logging
import random
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from .models import TradeOffer, TradeStatus

logger = logging.getLogger("gachabot.trades")

TRADE_OFFER_TTL = timedelta(minutes=120)
MAX_RESOLVED_HISTORY = 200
MAX_PENDING_PER_USER = 15
RECENT_RESOLVED_LIMIT = 10

_ID_ALPHABET = string.digits + string.ascii_lowercase


@dataclass
class SweepResult:
    offers: List[TradeOffer]
    changed: bool = False
    expired: int = 0
    trimmed: int = 0


@dataclass
class TradeListing:
    incoming_pending: List[TradeOffer] = field(default_factory=list)
    outgoing_pending: List[TradeOffer] = field(default_factory=list)
    recent_resolved: List[TradeOffer] = field(default_factory=list)


def _base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_ID_ALPHABET[remainder])
    return "".join(reversed(digits))


def create_trade_id(now: datetime, rng: Optional[random.Random] = None) -> str:
    rng = rng or random
    suffix = "".join(rng.choice(_ID_ALPHABET) for _ in range(6))
    return f"tr_{_base36(int(now.timestamp() * 1000))}_{suffix}"


def sort_offers(offers: Sequence[TradeOffer]) -> List[TradeOffer]:
    """Newest first; ids break ties so the order is stable across processes."""
    ordered = sorted(offers, key=lambda offer: offer.id)
    return sorted(ordered, key=lambda offer: offer.created_at, reverse=True)


def _sort_history(offers: Sequence[TradeOffer]) -> List[TradeOffer]:
    ordered = sorted(offers, key=lambda offer: offer.id)
    return sorted(ordered, key=lambda offer: offer.history_key(), reverse=True)


def sweep(
    offers: Sequence[TradeOffer],
    now: datetime,
    *,
    max_resolved: int = MAX_RESOLVED_HISTORY,
) -> SweepResult:
    """Expire past-due pending offers and cap the resolved history.

    Works on copies; the caller decides whether to commit the result.
    """
    working = [offer.copy() for offer in offers]
    expired = 0
    for offer in working:
        if offer.is_past_due(now):
            offer.resolve(TradeStatus.EXPIRED, now)
            expired += 1

    pending = [offer for offer in working if offer.is_pending]
    resolved = _sort_history([offer for offer in working if not offer.is_pending])
    kept = resolved[: max(0, int(max_resolved))]
    trimmed = len(resolved) - len(kept)
    if expired or trimmed:
        logger.debug("Trade sweep expired %d and trimmed %d offers", expired, trimmed)
    return SweepResult(
        offers=sort_offers([*pending, *kept]),
        changed=bool(expired or trimmed),
        expired=expired,
        trimmed=trimmed,
    )


def find_offer(offers: Sequence[TradeOffer], trade_id: str) -> Optional[TradeOffer]:
    key = str(trade_id or "").strip()
    for offer in offers:
        if offer.id == key:
            return offer
    return None


def pending_by_proposer(offers: Sequence[TradeOffer], proposer_id: str) -> List[TradeOffer]:
    return [offer for offer in offers if offer.is_pending and offer.proposer_id == proposer_id]


def find_duplicate(
    offers: Sequence[TradeOffer],
    proposer_id: str,
    target_id: str,
    offered_id: str,
    requested_id: str,
) -> Optional[TradeOffer]:
    for offer in offers:
        if (
            offer.is_pending
            and offer.proposer_id == proposer_id
            and offer.target_id == target_id
            and offer.offered_character_id == offered_id
            and offer.requested_character_id == requested_id
        ):
            return offer
    return None


def listing_for(offers: Sequence[TradeOffer], user_id: str, *, recent_limit: int = RECENT_RESOLVED_LIMIT) -> TradeListing:
    related = [offer for offer in offers if offer.involves(user_id)]
    return TradeListing(
        incoming_pending=[offer for offer in related if offer.is_pending and offer.target_id == user_id],
        outgoing_pending=[offer for offer in related if offer.is_pending and offer.proposer_id == user_id],
        recent_resolved=_sort_history([offer for offer in related if not offer.is_pending])[:recent_limit],
    )


def replace_offer(offers: Sequence[TradeOffer], updated: TradeOffer) -> List[TradeOffer]:
    return sort_offers([updated if offer.id == updated.id else offer for offer in offers])


__all__ = [
    "MAX_PENDING_PER_USER",
    "MAX_RESOLVED_HISTORY",
    "RECENT_RESOLVED_LIMIT",
    "SweepResult",
    "TRADE_OFFER_TTL",
    "TradeListing",
    "create_trade_id",
    "find_duplicate",
    "find_offer",
    "listing_for",
    "pending_by_proposer",
    "replace_offer",
    "sort_offers",
    "sweep",
]
