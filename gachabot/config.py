"""Runtime configuration for the gacha engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from .contracts import DEFAULT_CONTRACT_COSTS
from .models import Rarity
from .rolls import PityRules
from .utils import clamp, float_from_env, int_from_env, path_from_env

logger = logging.getLogger("gachabot.config")

# (minimum, maximum) per numeric field; applied to env values and override files alike.
_RANGES: Dict[str, tuple] = {
    "rolls_per_day": (1, 50),
    "daily_roll_bonus": (1, 100),
    "daily_cooldown_minutes": (1, 1440),
    "board_size": (10, 100),
    "board_refresh_minutes": (1, 1440),
    "board_prefetch_minutes": (1, 60),
    "mythic_catalog_refresh_minutes": (10, 10080),
    "pool_size": (100, 10000),
    "mythic_soft_pity_rolls": (1, 10000),
    "mythic_hard_pity_rolls": (1, 10000),
    "mythic_soft_pity_step_percent": (0.0, 10.0),
    "featured_board_boost_percent": (0.0, 300.0),
    "contract_max_per_command": (1, 50),
    "maintenance_interval_minutes": (1, 1440),
}
_CONTRACT_COST_RANGE = (1, 10000)
_CONTRACT_COST_ENV = {
    Rarity.COMMON: "CONTRACT_COMMON_TO_RARE_COST",
    Rarity.RARE: "CONTRACT_RARE_TO_EPIC_COST",
    Rarity.EPIC: "CONTRACT_EPIC_TO_LEGENDARY_COST",
    Rarity.LEGENDARY: "CONTRACT_LEGENDARY_TO_MYTHIC_COST",
}


@dataclass(frozen=True)
class GachaConfig:
    rolls_per_day: int = 8
    daily_roll_bonus: int = 5
    daily_cooldown_minutes: int = 10
    board_size: int = 50
    board_refresh_minutes: int = 60
    board_prefetch_minutes: int = 5
    mythic_catalog_refresh_minutes: int = 1440
    pool_size: int = 10000
    mythic_soft_pity_rolls: int = 700
    mythic_hard_pity_rolls: int = 1000
    mythic_soft_pity_step_percent: float = 0.05
    featured_board_boost_percent: float = 40.0
    contract_costs: Mapping[Rarity, int] = field(default_factory=lambda: dict(DEFAULT_CONTRACT_COSTS))
    contract_max_per_command: int = 10
    timezone: str = "UTC"
    admin_user_id: Optional[str] = None
    db_path: Path = Path("gachabot.sqlite3")
    command_prefix: str = "!"
    maintenance_interval_minutes: int = 1

    def __post_init__(self) -> None:
        # Frozen, so normalization goes through object.__setattr__.
        for name, (minimum, maximum) in _RANGES.items():
            object.__setattr__(self, name, clamp(getattr(self, name), minimum, maximum))
        if self.mythic_hard_pity_rolls < self.mythic_soft_pity_rolls:
            object.__setattr__(self, "mythic_hard_pity_rolls", self.mythic_soft_pity_rolls)
        costs = dict(DEFAULT_CONTRACT_COSTS)
        for rarity, cost in (self.contract_costs or {}).items():
            parsed = Rarity.parse(rarity)
            if parsed in costs:
                costs[parsed] = clamp(int(cost), *_CONTRACT_COST_RANGE)
        object.__setattr__(self, "contract_costs", costs)

    @property
    def pity_rules(self) -> PityRules:
        return PityRules.build(
            self.mythic_soft_pity_rolls,
            self.mythic_hard_pity_rolls,
            self.mythic_soft_pity_step_percent,
        )

    @classmethod
    def from_env(cls) -> "GachaConfig":
        """Build the configuration from environment variables plus an optional override file."""
        refresh_default = 60
        legacy_hours = os.getenv("BOARD_REFRESH_HOURS", "").strip()
        if legacy_hours and not os.getenv("BOARD_REFRESH_MINUTES", "").strip():
            try:
                refresh_default = int(float(legacy_hours) * 60)
            except ValueError:
                logger.warning("Invalid BOARD_REFRESH_HOURS=%s; using %s minutes.", legacy_hours, refresh_default)

        soft = int_from_env("MYTHIC_SOFT_PITY_ROLLS", 700, minimum=1, maximum=10000)
        hard = int_from_env("MYTHIC_HARD_PITY_ROLLS", 1000, minimum=soft, maximum=10000)

        costs = {
            rarity: int_from_env(env_name, DEFAULT_CONTRACT_COSTS[rarity], minimum=1, maximum=10000)
            for rarity, env_name in _CONTRACT_COST_ENV.items()
        }

        admin = os.getenv("GACHA_ADMIN_USER_ID", "").strip() or None
        db_path = path_from_env("GACHABOT_DB_PATH") or Path("gachabot.sqlite3")

        config = cls(
            rolls_per_day=int_from_env("ROLLS_PER_DAY", 8, minimum=1, maximum=50),
            daily_roll_bonus=int_from_env("DAILY_ROLL_BONUS", 5, minimum=1, maximum=100),
            daily_cooldown_minutes=int_from_env("DAILY_COOLDOWN_MINUTES", 10, minimum=1, maximum=1440),
            board_size=int_from_env("BOARD_SIZE", 50, minimum=10, maximum=100),
            board_refresh_minutes=int_from_env("BOARD_REFRESH_MINUTES", refresh_default, minimum=1, maximum=1440),
            board_prefetch_minutes=int_from_env("BOARD_PREFETCH_MINUTES", 5, minimum=1, maximum=60),
            mythic_catalog_refresh_minutes=int_from_env(
                "MYTHIC_CATALOG_REFRESH_MINUTES", 1440, minimum=10, maximum=10080
            ),
            pool_size=int_from_env("POOL_SIZE", 10000, minimum=100, maximum=10000),
            mythic_soft_pity_rolls=soft,
            mythic_hard_pity_rolls=hard,
            mythic_soft_pity_step_percent=float_from_env(
                "MYTHIC_SOFT_PITY_RATE_STEP_PERCENT", 0.05, minimum=0.0, maximum=10.0
            ),
            featured_board_boost_percent=float_from_env(
                "FEATURED_BOARD_BOOST_PERCENT", 40.0, minimum=0.0, maximum=300.0
            ),
            contract_costs=costs,
            contract_max_per_command=int_from_env("CONTRACT_MAX_PER_COMMAND", 10, minimum=1, maximum=50),
            timezone=os.getenv("BOT_TIMEZONE", "UTC").strip() or "UTC",
            admin_user_id=admin,
            db_path=db_path,
            command_prefix=os.getenv("GACHABOT_PREFIX", "!").strip() or "!",
            maintenance_interval_minutes=int_from_env("MAINTENANCE_INTERVAL_MINUTES", 1, minimum=1, maximum=1440),
        )
        return config.with_overrides(load_override_file(path_from_env("GACHABOT_CONFIG")))

    def with_overrides(self, overrides: Mapping[str, object]) -> "GachaConfig":
        """Apply keys from an override mapping; unknown or malformed entries are skipped."""
        if not overrides:
            return self
        known = {item.name: item for item in fields(self)}
        changes: Dict[str, object] = {}
        for key, value in overrides.items():
            name = str(key).strip().lower()
            if name not in known:
                logger.warning("Ignoring unknown gacha config key %s", key)
                continue
            try:
                changes[name] = _coerce(name, value, getattr(self, name))
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid value for gacha config key %s: %r", key, value)
        return replace(self, **changes) if changes else self


def _coerce(name: str, value: object, current: object) -> object:
    if name == "contract_costs":
        if not isinstance(value, Mapping):
            raise TypeError("contract_costs must be a mapping")
        return {Rarity(str(key).strip().lower()): int(cost) for key, cost in value.items()}
    if name == "db_path":
        return Path(str(value)).expanduser()
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return None if value is None else str(value)


def load_override_file(path: Optional[Path]) -> Dict[str, object]:
    """Read a YAML (or JSON, which YAML accepts) mapping of config overrides."""
    if not path:
        return {}
    if not path.exists():
        logger.warning("Gacha config %s not found; using environment values.", path)
        return {}
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (yaml.YAMLError, OSError) as exc:
        logger.warning("Failed to parse gacha config %s: %s", path, exc)
        return {}
    if not isinstance(payload, dict):
        logger.warning("Gacha config %s must be a mapping.", path)
        return {}
    return payload


__all__ = ["GachaConfig", "load_override_file"]
