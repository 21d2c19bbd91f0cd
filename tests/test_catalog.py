import unittest

from gachabot import catalog
from gachabot.models import UNKNOWN_ANIME_TITLE, UNKNOWN_CHARACTER_NAME, CharacterSnapshot, Rarity


class RarityTokenTests(unittest.TestCase):
    def test_coerce_uses_default_only_for_unknown_tokens(self) -> None:
        self.assertIs(Rarity.coerce(" LEGENDARY "), Rarity.LEGENDARY)
        self.assertIs(Rarity.coerce(Rarity.EPIC, Rarity.RARE), Rarity.EPIC)
        self.assertIs(Rarity.coerce("shiny", Rarity.RARE), Rarity.RARE)
        self.assertIs(Rarity.coerce("shiny"), Rarity.COMMON)
        self.assertIs(Rarity.coerce(None, None), Rarity.COMMON)
        self.assertIsNone(Rarity.parse("shiny"))


class ClassifyRarityTests(unittest.TestCase):
    def test_rank_thresholds_are_inclusive(self) -> None:
        cases = {
            1: Rarity.MYTHIC,
            200: Rarity.MYTHIC,
            201: Rarity.LEGENDARY,
            1000: Rarity.LEGENDARY,
            2500: Rarity.EPIC,
            6000: Rarity.RARE,
            6001: Rarity.COMMON,
        }
        for rank, expected in cases.items():
            with self.subTest(rank=rank):
                self.assertIs(catalog.classify_rarity(CharacterSnapshot(id="x", popularity_rank=rank)), expected)

    def test_favorites_used_when_rank_is_unknown(self) -> None:
        cases = {
            80000: Rarity.MYTHIC,
            25000: Rarity.LEGENDARY,
            7000: Rarity.EPIC,
            1500: Rarity.RARE,
            1499: Rarity.COMMON,
            0: Rarity.COMMON,
        }
        for favorites, expected in cases.items():
            with self.subTest(favorites=favorites):
                snapshot = CharacterSnapshot(id="x", favorites=favorites)
                self.assertIs(catalog.classify_rarity(snapshot), expected)

    def test_rank_takes_priority_over_favorites(self) -> None:
        snapshot = CharacterSnapshot(id="x", popularity_rank=9000, favorites=100000)
        self.assertIs(catalog.classify_rarity(snapshot), Rarity.COMMON)


class NormalizeTests(unittest.TestCase):
    def test_empty_input_yields_nothing(self) -> None:
        self.assertEqual(catalog.normalize(None), [])
        self.assertEqual(catalog.normalize([]), [])

    def test_missing_fields_get_safe_defaults(self) -> None:
        [snapshot] = catalog.normalize([{"id": "anilist_1"}, {"name": "No id"}])
        self.assertEqual(snapshot.name, UNKNOWN_CHARACTER_NAME)
        self.assertEqual(snapshot.anime, UNKNOWN_ANIME_TITLE)
        self.assertEqual(snapshot.image_urls, ())

    def test_repeated_ids_are_merged(self) -> None:
        merged = catalog.normalize(
            [
                {"id": "anilist_1", "name": "Rem", "imageUrl": "https://a/1.png", "favorites": 10, "sources": ["anilist"]},
                {
                    "id": "anilist_1",
                    "anime": "Re:Zero",
                    "imageUrls": ["https://a/2.png"],
                    "favorites": 50,
                    "sources": ["jikan"],
                },
            ]
        )
        self.assertEqual(len(merged), 1)
        rem = merged[0]
        self.assertEqual(rem.name, "Rem")
        self.assertEqual(rem.anime, "Re:Zero")
        self.assertEqual(rem.favorites, 50)
        self.assertEqual(set(rem.image_urls), {"https://a/1.png", "https://a/2.png"})
        self.assertEqual(set(rem.sources), {"anilist", "jikan"})


class ClassificationPipelineTests(unittest.TestCase):
    def test_assign_rarity_resets_weight_and_featured_flag(self) -> None:
        snapshot = CharacterSnapshot(id="x", popularity_rank=50, drop_weight=99.0, featured=True)
        [classified] = catalog.assign_rarity_and_weight([snapshot])
        self.assertIs(classified.rarity, Rarity.MYTHIC)
        self.assertEqual(classified.drop_weight, 0.5)
        self.assertFalse(classified.featured)

    def test_force_rarity(self) -> None:
        [forced] = catalog.force_rarity([CharacterSnapshot(id="x", popularity_rank=5000)], Rarity.MYTHIC)
        self.assertIs(forced.rarity, Rarity.MYTHIC)
        self.assertEqual(forced.drop_weight, catalog.base_drop_weight(Rarity.MYTHIC))

    def test_sort_by_ranking_puts_unranked_last(self) -> None:
        ordered = catalog.sort_by_ranking(
            [
                CharacterSnapshot(id="unranked", favorites=99999),
                CharacterSnapshot(id="second", popularity_rank=2),
                CharacterSnapshot(id="first", popularity_rank=1),
            ]
        )
        self.assertEqual([c.id for c in ordered], ["first", "second", "unranked"])


class LookupTests(unittest.TestCase):
    def setUp(self) -> None:
        self.characters = [
            CharacterSnapshot(id="anilist_1", name="Light Yagami", anime="Death Note", favorites=10),
            CharacterSnapshot(id="anilist_2", name="L Lawliet", anime="Death Note", favorites=20),
            CharacterSnapshot(id="anilist_3", name="Rem", anime="Re:Zero", favorites=5),
        ]

    def test_exact_name_beats_substring(self) -> None:
        match = catalog.find_best_character_match("rem", self.characters)
        self.assertEqual(match.id, "anilist_3")

    def test_anime_match_prefers_more_favorites(self) -> None:
        match = catalog.find_best_character_match("death note", self.characters)
        self.assertEqual(match.id, "anilist_2")

    def test_no_match_returns_none(self) -> None:
        self.assertIsNone(catalog.find_best_character_match("naruto", self.characters))
        self.assertIsNone(catalog.find_best_character_match("   ", self.characters))

    def test_known_anime_detection(self) -> None:
        self.assertTrue(catalog.is_known_anime_title("Death Note"))
        self.assertFalse(catalog.is_known_anime_title("Unknown anime"))
        self.assertFalse(catalog.is_known_anime_title(""))


if __name__ == "__main__":
    unittest.main()
