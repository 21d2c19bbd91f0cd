"""Gacha economy bot: catalog, boards, pity rolls, contracts and trades."""

from . import board, catalog, config, contracts, engine, errors, inventory, models, rolls, storage, trades, utils  # noqa: F401

__all__ = [
    "board",
    "catalog",
    "config",
    "contracts",
    "engine",
    "errors",
    "inventory",
    "models",
    "rolls",
    "storage",
    "trades",
    "utils",
]
