"""Utility helpers for the gacha bot."""

from __future__ import annotations

import logging
import os
import re
import unicodedata
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger("gachabot.utils")

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def int_from_env(name: str, default: int, *, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%s. Falling back to %s.", name, raw, default)
        return default
    return clamp(value, minimum, maximum)


def float_from_env(
    name: str,
    default: float,
    *,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid float for %s=%s. Falling back to %s.", name, raw, default)
        return default
    return clamp(value, minimum, maximum)


def path_from_env(name: str) -> Optional[Path]:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return Path(value).expanduser()


def clamp(value, minimum=None, maximum=None):
    if minimum is not None and value < minimum:
        return minimum
    if maximum is not None and value > maximum:
        return maximum
    return value


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, returning None for anything unusable."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def today_key(tz_name: str, now: Optional[datetime] = None) -> str:
    """Return the calendar day (YYYY-MM-DD) for ``now`` in the given timezone."""
    moment = now or utc_now()
    try:
        moment = moment.astimezone(ZoneInfo(tz_name or "UTC"))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %s; using UTC day boundaries.", tz_name)
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%d")


def normalize_text(value: object) -> str:
    """Lowercase, strip accents and collapse everything non-alphanumeric to spaces."""
    if value is None:
        return ""
    decomposed = unicodedata.normalize("NFD", str(value).lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", stripped).strip()


def unique_urls(urls: Iterable[object]) -> List[str]:
    result: List[str] = []
    seen = set()
    for entry in urls:
        url = str(entry or "").strip()
        if not url or url in seen:
            continue
        seen.add(url)
        result.append(url)
    return result


def format_duration(milliseconds: float) -> str:
    total_seconds = max(0, int(-(-max(0.0, float(milliseconds or 0)) // 1000)))
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    return f"{minutes}m {seconds}s"


__all__ = [
    "clamp",
    "float_from_env",
    "format_duration",
    "int_from_env",
    "normalize_text",
    "parse_iso",
    "path_from_env",
    "to_iso",
    "today_key",
    "unique_urls",
    "utc_now",
]
