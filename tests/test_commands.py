import unittest
from datetime import timedelta

from gachabot import commands
from gachabot.engine import RollResult
from gachabot.models import Rarity, TradeOffer, TradeStatus
from gachabot.rolls import DrawOutcome

from gacha_fixtures import START, char, make_config


class NormalizeSubcommandTests(unittest.TestCase):
    def test_aliases(self) -> None:
        cases = {
            None: "help",
            "Pull": "roll",
            "INV": "inventory",
            "refresh-board": "refreshboard",
            "intercambio": "trade",
            "tradé": "trade",
            "nextboard": "timer",
            "dance": "unknown",
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(commands.normalize_subcommand(raw), expected)

    def test_trade_actions(self) -> None:
        self.assertEqual(commands.normalize_trade_action(None), "help")
        self.assertEqual(commands.normalize_trade_action("Aceptar"), "accept")
        self.assertEqual(commands.normalize_trade_action("pending"), "list")
        self.assertEqual(commands.normalize_trade_action("steal"), "unknown")

    def test_contract_rarity(self) -> None:
        self.assertIs(commands.normalize_contract_rarity("Épico"), Rarity.EPIC)
        self.assertIs(commands.normalize_contract_rarity("c"), Rarity.COMMON)
        self.assertIsNone(commands.normalize_contract_rarity("mythic"))
        self.assertIsNone(commands.normalize_contract_rarity(None))


class ArgumentParsingTests(unittest.TestCase):
    def test_roll_count(self) -> None:
        self.assertEqual(commands.parse_roll_count(None), 1)
        self.assertEqual(commands.parse_roll_count(" 5 "), 5)
        self.assertIsNone(commands.parse_roll_count("0"))
        self.assertIsNone(commands.parse_roll_count("lots"))

    def test_mentions(self) -> None:
        self.assertEqual(commands.extract_mentioned_user_id("<@!123>"), "123")
        self.assertEqual(commands.extract_mentioned_user_id("<@456>"), "456")
        self.assertIsNone(commands.extract_mentioned_user_id("bob"))

    def test_contract_args(self) -> None:
        self.assertEqual(commands.split_contract_args([]), (1, ""))
        self.assertEqual(commands.split_contract_args(["3", "--pick", "a:1"]), (3, "--pick a:1"))
        self.assertEqual(commands.split_contract_args(["0"]), (None, ""))
        self.assertEqual(commands.split_contract_args(["--pick", "a"]), (1, "--pick a"))


class TradeOfferParsingTests(unittest.TestCase):
    def test_supported_shapes(self) -> None:
        cases = {
            '--give "Shigeo Kageyama" --want "Light Yagami"': ("Shigeo Kageyama", "Light Yagami"),
            "--give Mob --want Light Yagami": ("Mob", "Light Yagami"),
            "Rem por Ram": ("Rem", "Ram"),
            "Rem for Ram": ("Rem", "Ram"),
            "Light Yagami -> L Lawliet": ("Light Yagami", "L Lawliet"),
            "Mob => Reigen": ("Mob", "Reigen"),
            '"Light Yagami" "L Lawliet"': ("Light Yagami", "L Lawliet"),
            "anilist_1 anilist_2": ("anilist_1", "anilist_2"),
        }
        for raw, (give, want) in cases.items():
            with self.subTest(raw=raw):
                details = commands.parse_trade_offer_details(raw)
                self.assertTrue(details.valid)
                self.assertEqual((details.give, details.want), (give, want))

    def test_unreadable_offers(self) -> None:
        for raw in ("", "one two three", "--give Mob --want"):
            with self.subTest(raw=raw):
                details = commands.parse_trade_offer_details(raw)
                self.assertFalse(details.valid)
                self.assertIsNone(details.give)


class AdminCheckTests(unittest.TestCase):
    def test_refresh_permissions(self) -> None:
        config = make_config(admin_user_id="42")
        self.assertEqual(commands.can_refresh_board(42, config), (True, None))
        allowed, error = commands.can_refresh_board("7", config)
        self.assertFalse(allowed)
        self.assertIn("permission", error)

        allowed, error = commands.can_refresh_board("7", make_config())
        self.assertFalse(allowed)
        self.assertIn("GACHA_ADMIN_USER_ID", error)


class FormattingTests(unittest.TestCase):
    def _offer(self, status=TradeStatus.PENDING) -> TradeOffer:
        return TradeOffer(
            id="tr_abc_123456",
            proposer_id="1",
            target_id="2",
            offered_character_id="alpha",
            requested_character_id="beta",
            offered_character=char("alpha", name="Alpha", anime="Show"),
            requested_character=char("beta", name="Beta", anime="Show"),
            created_at=START,
            expires_at=START + timedelta(minutes=120),
            status=status,
        )

    def test_trade_lines(self) -> None:
        now = START + timedelta(minutes=60)
        incoming = commands.format_trade_line(self._offer(), "incoming", now)
        self.assertIn("<@1> offers **Alpha (Show)** for **Beta (Show)**", incoming)
        self.assertIn("expires in 1h 0m 0s", incoming)
        outgoing = commands.format_trade_line(self._offer(), "outgoing", START + timedelta(minutes=121))
        self.assertIn("to <@2>", outgoing)
        self.assertTrue(outgoing.endswith("| expired"))
        history = commands.format_trade_line(self._offer(TradeStatus.ACCEPTED), "history", now)
        self.assertIn("Accepted: <@1> -> <@2>", history)

    def test_labels(self) -> None:
        self.assertEqual(commands.character_label(None, "x"), "x")
        self.assertEqual(commands.character_label(char("a", name="Rem", anime="Re:Zero")), "Rem (Re:Zero)")

    def test_limit_lines(self) -> None:
        lines = [str(i) for i in range(10)]
        limited = commands.limit_lines(lines, 8)
        self.assertEqual(len(limited), 9)
        self.assertEqual(limited[-1], "... and 2 more")
        self.assertEqual(commands.limit_lines(lines[:3], 8), lines[:3])

    def test_chunk_lines_respects_limit(self) -> None:
        chunks = commands.chunk_lines(["x" * 10] * 5, limit=25)
        self.assertEqual(len(chunks), 3)
        self.assertTrue(all(len(chunk) <= 25 for chunk in chunks))
        self.assertEqual(commands.chunk_lines([]), [])

    def test_roll_results_sorted_rarest_first(self) -> None:
        drawn = [
            char("c", Rarity.COMMON),
            char("m", Rarity.MYTHIC, rank=5),
            char("e", Rarity.EPIC),
            char("m2", Rarity.MYTHIC, rank=2),
        ]
        result = RollResult(results=[DrawOutcome(c, False, 0.0, 0, 1) for c in drawn])
        ordered = commands.sort_roll_results(result)
        self.assertEqual([(n, c.id) for n, c in ordered], [(4, "m2"), (2, "m"), (3, "e"), (1, "c")])

    def test_board_lines_are_numbered(self) -> None:
        featured = char("e", Rarity.EPIC, 14.0, name="Rem", anime="Re:Zero").replace(featured=True)
        lines = commands.format_board_lines([featured, char("c", name="Mob", anime="MP100")])
        self.assertEqual(lines[0], "1. [Epic] Rem (Re:Zero) w=14 *featured*")
        self.assertTrue(lines[1].startswith("2. [Common] Mob (MP100)"))

    def test_help_mentions_prefix(self) -> None:
        text = commands.help_text("?")
        self.assertIn("?gacha roll", text)
        self.assertIn("?gacha refreshboard", text)


if __name__ == "__main__":
    unittest.main()
