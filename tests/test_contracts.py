import random
import unittest

from gachabot import contracts, inventory
from gachabot.contracts import MaterialSelection
from gachabot.models import Rarity, UserRecord

from gacha_fixtures import char


def _user_with(stacks):
    user = UserRecord()
    for character, copies in stacks:
        inventory.upsert(user, character, copies=copies)
    return user


class RuleTests(unittest.TestCase):
    def test_default_chain(self) -> None:
        rules = contracts.build_contract_rules()
        self.assertEqual(
            [(r.from_rarity, r.to_rarity, r.cost) for r in rules],
            [
                (Rarity.COMMON, Rarity.RARE, 100),
                (Rarity.RARE, Rarity.EPIC, 50),
                (Rarity.EPIC, Rarity.LEGENDARY, 20),
                (Rarity.LEGENDARY, Rarity.MYTHIC, 5),
            ],
        )

    def test_mythic_is_not_a_source(self) -> None:
        rules = contracts.build_contract_rules()
        self.assertIsNone(contracts.rule_for(rules, "mythic"))
        self.assertIsNone(contracts.rule_for(rules, "shiny"))
        self.assertEqual(contracts.rule_for(rules, "EPIC").cost, 20)

    def test_executable_contracts_takes_the_smallest_limit(self) -> None:
        self.assertEqual(contracts.executable_contracts(5, 10, 250, 100), 2)
        self.assertEqual(contracts.executable_contracts(30, 10, 10000, 100), 10)
        self.assertEqual(contracts.executable_contracts(1, 10, 99, 100), 0)


class AutomaticConsumptionTests(unittest.TestCase):
    def test_preserves_one_copy_per_stack_first(self) -> None:
        user = _user_with([(char("a"), 50), (char("b"), 40), (char("c"), 15)])
        result = contracts.consume_automatically(user, Rarity.COMMON, 100)
        self.assertTrue(result.ok)
        self.assertEqual(result.consumed, 100)
        self.assertEqual({key: user.count_of(key) for key in "abc"}, {"a": 1, "b": 1, "c": 3})

    def test_consumes_last_copies_when_needed(self) -> None:
        user = _user_with([(char("a"), 3), (char("b"), 1)])
        result = contracts.consume_automatically(user, Rarity.COMMON, 4)
        self.assertTrue(result.ok)
        self.assertEqual(user.inventory, {})

    def test_ignores_other_rarities(self) -> None:
        user = _user_with([(char("a"), 3), (char("r", Rarity.RARE), 10)])
        result = contracts.consume_automatically(user, Rarity.COMMON, 5)
        self.assertFalse(result.ok)
        self.assertEqual(user.count_of("r"), 10)


class ManualSelectionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.user = _user_with(
            [(char("e1", Rarity.EPIC), 15), (char("e2", Rarity.EPIC), 10), (char("r1", Rarity.RARE), 30)]
        )

    def test_consumes_selected_materials(self) -> None:
        picks = [MaterialSelection("e1", 12), MaterialSelection("e2", 8)]
        result = contracts.consume_selected(self.user, Rarity.EPIC, 20, picks)
        self.assertTrue(result.ok)
        self.assertEqual(result.consumed, 20)
        self.assertEqual((self.user.count_of("e1"), self.user.count_of("e2")), (3, 2))
        self.assertEqual([(s.character_id, s.count) for s in result.consumed_by_id], [("e1", 12), ("e2", 8)])

    def test_any_bad_pick_leaves_inventory_untouched(self) -> None:
        cases = [
            [MaterialSelection("missing", 1), MaterialSelection("e1", 19)],
            [MaterialSelection("r1", 20)],
            [MaterialSelection("e1", 16), MaterialSelection("e2", 4)],
            [MaterialSelection("e1", 5)],
        ]
        for picks in cases:
            with self.subTest(picks=picks):
                result = contracts.consume_selected(self.user, Rarity.EPIC, 20, picks)
                self.assertFalse(result.ok)
                self.assertTrue(result.error)
                self.assertEqual((self.user.count_of("e1"), self.user.count_of("e2")), (15, 10))

    def test_duplicate_picks_are_summed(self) -> None:
        picks = contracts.normalize_material_selection(
            [MaterialSelection("E1", 2), MaterialSelection("e1", 3), MaterialSelection("e2", 1)]
        )
        self.assertEqual(picks, [MaterialSelection("e1", 5), MaterialSelection("e2", 1)])


class MaterialListParsingTests(unittest.TestCase):
    def test_empty_means_automatic(self) -> None:
        self.assertEqual(contracts.parse_material_list(""), ([], None))

    def test_pick_prefix_and_counts(self) -> None:
        picks, error = contracts.parse_material_list("--pick anilist_1:3, Anilist_2")
        self.assertIsNone(error)
        self.assertEqual(picks, [MaterialSelection("anilist_1", 3), MaterialSelection("anilist_2", 1)])

    def test_invalid_tokens(self) -> None:
        for raw in ("--pick", "anilist 1:3", "anilist_1:0", "a:b"):
            with self.subTest(raw=raw):
                picks, error = contracts.parse_material_list(raw)
                self.assertEqual(picks, [])
                self.assertIsNotNone(error)


class RewardTests(unittest.TestCase):
    def test_rewards_come_from_the_pool(self) -> None:
        pool = [char("r1", Rarity.RARE), char("r2", Rarity.RARE)]
        rewards = contracts.draw_rewards(pool, 5, rng=random.Random(3))
        self.assertEqual(len(rewards), 5)
        self.assertTrue(all(reward in pool for reward in rewards))
        self.assertEqual(contracts.draw_rewards([], 3), [])


if __name__ == "__main__":
    unittest.main()
