import random
import unittest

from gachabot import rolls
from gachabot.models import Rarity

from gacha_fixtures import char


class _FixedRandom:
    """Stands in for random.Random with a predetermined uniform() result."""

    def __init__(self, value: float) -> None:
        self.value = value
        self.choices = 0

    def uniform(self, low: float, high: float) -> float:
        return min(high, self.value)

    def choice(self, items):
        self.choices += 1
        return items[0]


class PityRulesTests(unittest.TestCase):
    def test_hard_threshold_never_below_soft(self) -> None:
        rules = rolls.PityRules.build(700, 300, 0.05)
        self.assertEqual(rules.hard_threshold, 700)
        self.assertEqual(rules.hard_trigger_at, 699)

    def test_clamp_counter(self) -> None:
        rules = rolls.PityRules.build(5, 10, 1.0)
        self.assertEqual(rules.clamp_counter(-3), 0)
        self.assertEqual(rules.clamp_counter(42), 9)

    def test_advance_pity(self) -> None:
        rules = rolls.PityRules.build(5, 10, 1.0)
        self.assertEqual(rolls.advance_pity(3, char("r", Rarity.RARE), rules), 4)
        self.assertEqual(rolls.advance_pity(9, char("r", Rarity.RARE), rules), 9)
        self.assertEqual(rolls.advance_pity(7, char("m", Rarity.MYTHIC), rules), 0)


class SoftPityTests(unittest.TestCase):
    def test_bonus_starts_at_soft_threshold_minus_one(self) -> None:
        self.assertEqual(rolls.soft_pity_bonus_percent(698, 700, 0.05), 0.0)
        self.assertAlmostEqual(rolls.soft_pity_bonus_percent(699, 700, 0.05), 0.05)
        self.assertAlmostEqual(rolls.soft_pity_bonus_percent(708, 700, 0.05), 0.5)

    def test_zero_step_disables_bonus(self) -> None:
        self.assertEqual(rolls.soft_pity_bonus_percent(900, 700, 0), 0.0)

    def test_boost_raises_masked_chance_by_bonus_points(self) -> None:
        weights = [1.0, 99.0]
        mask = [True, False]
        boosted = rolls.boost_subset_chance(weights, mask, 10)
        self.assertAlmostEqual(rolls.chance_of(boosted, mask), 0.11)
        self.assertEqual(boosted[1], 99.0)

    def test_boost_is_capped(self) -> None:
        boosted = rolls.boost_subset_chance([1.0, 99.0], [True, False], 500)
        self.assertAlmostEqual(rolls.chance_of(boosted, [True, False]), rolls.MAX_BOOSTED_CHANCE)

    def test_boost_without_masked_weight_is_a_no_op(self) -> None:
        self.assertEqual(rolls.boost_subset_chance([5.0, 5.0], [False, False], 50), [5.0, 5.0])


class WeightedPickTests(unittest.TestCase):
    def test_cumulative_sampling(self) -> None:
        items = ["a", "b", "c"]
        weights = [1.0, 0.0, 3.0]
        self.assertEqual(rolls.weighted_pick(items, weights, _FixedRandom(0.5)), "a")
        self.assertEqual(rolls.weighted_pick(items, weights, _FixedRandom(2.0)), "c")

    def test_all_zero_weights_fall_back_to_uniform_choice(self) -> None:
        rng = _FixedRandom(0)
        self.assertEqual(rolls.weighted_pick(["x", "y"], [0.0, 0.0], rng), "x")
        self.assertEqual(rng.choices, 1)

    def test_empty_items_raise(self) -> None:
        with self.assertRaises(ValueError):
            rolls.weighted_pick([], [])


class DrawTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rules = rolls.PityRules.build(5, 10, 1.0)
        self.mythic = char("m", Rarity.MYTHIC, 0.5)
        self.rare = char("r", Rarity.RARE, 27.0)

    def test_hard_pity_forces_a_mythic(self) -> None:
        for seed in range(20):
            outcome = rolls.draw([self.mythic, self.rare], 9, self.rules, rng=random.Random(seed))
            self.assertTrue(outcome.hard_pity)
            self.assertIs(outcome.character, self.mythic)
            self.assertEqual(outcome.pity_after, 0)

    def test_hard_pity_needs_a_mythic_on_the_board(self) -> None:
        outcome = rolls.draw([self.rare], 9, self.rules, rng=random.Random(1))
        self.assertFalse(outcome.hard_pity)
        self.assertEqual(outcome.pity_after, 9)

    def test_soft_pity_reports_bonus(self) -> None:
        outcome = rolls.draw([self.mythic, self.rare], 6, self.rules, rng=random.Random(1))
        self.assertFalse(outcome.hard_pity)
        self.assertAlmostEqual(outcome.soft_bonus_percent, 3.0)
        self.assertTrue(outcome.soft_pity)

    def test_counter_stays_below_hard_threshold(self) -> None:
        rng = random.Random(11)
        counter = 0
        board = [self.mythic, self.rare, char("c", Rarity.COMMON, 60.0)]
        for _ in range(500):
            outcome = rolls.draw(board, counter, self.rules, rng=rng)
            counter = outcome.pity_after
            self.assertGreaterEqual(counter, 0)
            self.assertLess(counter, self.rules.hard_threshold)

    def test_empty_board_raises(self) -> None:
        with self.assertRaises(ValueError):
            rolls.draw([], 0, self.rules)


if __name__ == "__main__":
    unittest.main()
