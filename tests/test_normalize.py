from __future__ import annotations

import unittest

from taste_index.normalize import (
    normalize_address,
    normalize_caption,
    normalize_category,
    normalize_display_name,
    normalize_rating,
)


class TestNormalize(unittest.TestCase):
    def test_address_is_trimmed_and_lowercased(self) -> None:
        raw = "  0x" + "AbCd" * 10 + " "
        self.assertEqual(normalize_address(raw), "0x" + "abcd" * 10)
        self.assertEqual(normalize_address("Alice"), "alice")

    def test_address_rejects_short_hex_and_whitespace(self) -> None:
        for bad in ("", "   ", "0x1234", "0x" + "g" * 40, "al ice"):
            with self.subTest(bad=bad):
                with self.assertRaises(ValueError):
                    normalize_address(bad)

    def test_category(self) -> None:
        self.assertEqual(normalize_category(" COOK ", allowed=["cook", "taste"]), "cook")
        with self.assertRaises(ValueError):
            normalize_category("bake", allowed=["cook", "taste"])

    def test_caption_and_rating_bounds(self) -> None:
        self.assertEqual(normalize_caption(None, max_chars=5), "")
        self.assertEqual(normalize_caption(" hi ", max_chars=5), "hi")
        with self.assertRaises(ValueError):
            normalize_caption("x" * 6, max_chars=5)

        self.assertIsNone(normalize_rating(None, low=1, high=5))
        self.assertEqual(normalize_rating(5, low=1, high=5), 5)
        with self.assertRaises(ValueError):
            normalize_rating(0, low=1, high=5)

    def test_display_name_collapses_whitespace(self) -> None:
        self.assertEqual(normalize_display_name("  Chef \n  Ana ", max_chars=50), "Chef Ana")
        self.assertIsNone(normalize_display_name("   ", max_chars=50))
        with self.assertRaises(ValueError):
            normalize_display_name("x" * 51, max_chars=50)


if __name__ == "__main__":
    unittest.main()
