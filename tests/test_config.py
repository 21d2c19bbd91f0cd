import os
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from gachabot import utils
from gachabot.config import GachaConfig, load_override_file
from gachabot.models import Rarity

from gacha_fixtures import START


class GachaConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        config = GachaConfig()
        self.assertEqual(config.rolls_per_day, 8)
        self.assertEqual(config.board_size, 50)
        self.assertEqual(config.contract_costs[Rarity.COMMON], 100)
        self.assertEqual(config.pity_rules.hard_threshold, 1000)

    def test_values_are_clamped(self) -> None:
        config = GachaConfig(board_size=500, rolls_per_day=0, mythic_soft_pity_rolls=900, mythic_hard_pity_rolls=100)
        self.assertEqual(config.board_size, 100)
        self.assertEqual(config.rolls_per_day, 1)
        self.assertEqual(config.mythic_hard_pity_rolls, 900)

    def test_from_env(self) -> None:
        env = {
            "ROLLS_PER_DAY": "12",
            "BOARD_SIZE": "500",
            "BOARD_REFRESH_HOURS": "2",
            "MYTHIC_SOFT_PITY_ROLLS": "800",
            "MYTHIC_HARD_PITY_ROLLS": "500",
            "CONTRACT_COMMON_TO_RARE_COST": "150",
            "DAILY_ROLL_BONUS": "lots",
            "GACHA_ADMIN_USER_ID": " 42 ",
            "BOT_TIMEZONE": "Europe/Madrid",
        }
        with patch.dict(os.environ, env, clear=True):
            config = GachaConfig.from_env()
        self.assertEqual(config.rolls_per_day, 12)
        self.assertEqual(config.board_size, 100)
        self.assertEqual(config.board_refresh_minutes, 120)
        self.assertEqual((config.mythic_soft_pity_rolls, config.mythic_hard_pity_rolls), (800, 800))
        self.assertEqual(config.contract_costs[Rarity.COMMON], 150)
        self.assertEqual(config.daily_roll_bonus, 5)
        self.assertEqual(config.admin_user_id, "42")
        self.assertEqual(config.timezone, "Europe/Madrid")

    def test_minutes_win_over_legacy_hours(self) -> None:
        with patch.dict(os.environ, {"BOARD_REFRESH_HOURS": "2", "BOARD_REFRESH_MINUTES": "30"}, clear=True):
            self.assertEqual(GachaConfig.from_env().board_refresh_minutes, 30)

    def test_yaml_override_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "gacha.yaml"
            path.write_text(
                "rolls_per_day: 20\nboard_size: 5\nunknown_key: 1\nPOOL_SIZE: abc\ncontract_costs:\n  epic: 30\n",
                encoding="utf-8",
            )
            with patch.dict(os.environ, {"GACHABOT_CONFIG": str(path)}, clear=True):
                config = GachaConfig.from_env()
        self.assertEqual(config.rolls_per_day, 20)
        self.assertEqual(config.board_size, 10)
        self.assertEqual(config.pool_size, 10000)
        self.assertEqual(config.contract_costs[Rarity.EPIC], 30)
        self.assertEqual(config.contract_costs[Rarity.COMMON], 100)

    def test_unusable_override_files(self) -> None:
        self.assertEqual(load_override_file(None), {})
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(load_override_file(Path(tmp) / "missing.yaml"), {})
            listing = Path(tmp) / "list.yaml"
            listing.write_text("- 1\n- 2\n", encoding="utf-8")
            self.assertEqual(load_override_file(listing), {})
            broken = Path(tmp) / "broken.yaml"
            broken.write_text("rolls_per_day: [1, 2\n", encoding="utf-8")
            self.assertEqual(load_override_file(broken), {})


class UtilsTests(unittest.TestCase):
    def test_today_key_uses_timezone(self) -> None:
        early = datetime(2025, 3, 1, 3, 0, tzinfo=timezone.utc)
        self.assertEqual(utils.today_key("UTC", early), "2025-03-01")
        self.assertEqual(utils.today_key("America/New_York", early), "2025-02-28")
        self.assertEqual(utils.today_key("Not/AZone", early), "2025-03-01")

    def test_iso_helpers(self) -> None:
        self.assertEqual(utils.to_iso(START), "2025-03-01T12:00:00Z")
        self.assertEqual(utils.parse_iso("2025-03-01T12:00:00Z"), START)
        self.assertEqual(utils.parse_iso("2025-03-01T12:00:00"), START)
        self.assertIsNone(utils.parse_iso("yesterday"))
        self.assertIsNone(utils.parse_iso(None))

    def test_format_duration(self) -> None:
        self.assertEqual(utils.format_duration(0), "0m 0s")
        self.assertEqual(utils.format_duration(1500), "0m 2s")
        self.assertEqual(utils.format_duration(61_000), "1m 1s")
        self.assertEqual(utils.format_duration(3_661_000), "1h 1m 1s")

    def test_normalize_text(self) -> None:
        self.assertEqual(utils.normalize_text("  Épico -- Ñame! "), "epico name")
        self.assertEqual(utils.normalize_text(None), "")


if __name__ == "__main__":
    unittest.main()
