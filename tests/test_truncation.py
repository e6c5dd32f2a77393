import unittest
from unittest.mock import patch

import config
from truncation import is_truncated, resolve_message


class TestTruncationGuard(unittest.TestCase):
    """Short extractions are treated as lossy, never as correctly isolated messages."""

    def test_short_extraction_of_long_response_uses_step1_text(self):
        step1 = "🚀 *Launch day!*\n" + ("Full update body. " * 40)
        extracted = step1[:50]

        decision = resolve_message(step1, extracted)

        self.assertTrue(decision.truncation_detected)
        self.assertEqual(decision.message, step1)

    def test_extraction_above_ratio_is_kept(self):
        step1 = "x" * 800
        extracted = "y" * 750

        decision = resolve_message(step1, extracted)

        self.assertFalse(decision.truncation_detected)
        self.assertEqual(decision.message, extracted)
        self.assertEqual(len(decision.message), 750)

    def test_ratio_boundary_is_exclusive(self):
        step1 = "x" * 1000
        self.assertFalse(is_truncated(step1, "y" * 300))
        self.assertTrue(is_truncated(step1, "y" * 299))

    def test_short_step1_never_triggers(self):
        step1 = "x" * 100
        self.assertFalse(is_truncated(step1, "y"))
        self.assertTrue(is_truncated("x" * 101, "y"))

    def test_empty_extraction_falls_back_without_flag(self):
        step1 = "x" * 500
        decision = resolve_message(step1, "")
        self.assertFalse(decision.truncation_detected)
        self.assertEqual(decision.message, step1)

    def test_thresholds_follow_config(self):
        step1 = "x" * 200
        with patch.object(config, "TRUNCATION_RATIO", 0.9), patch.object(
            config, "TRUNCATION_MIN_CHARS", 150
        ):
            self.assertTrue(is_truncated(step1, "y" * 170))
        self.assertFalse(is_truncated(step1, "y" * 170))

    def test_explicit_thresholds_override_config(self):
        self.assertFalse(is_truncated("x" * 200, "y" * 10, min_chars=500))
        self.assertTrue(is_truncated("x" * 200, "y" * 150, ratio=0.8))


if __name__ == "__main__":
    unittest.main()
