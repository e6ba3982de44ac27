import unittest

from vision.scoring import clamp_confidence, compute_delta, normalize_emotion, round_half_away


class ScoringTestCase(unittest.TestCase):
    def test_happy_full_confidence(self) -> None:
        self.assertEqual(compute_delta("happy", 100), 2)

    def test_angry_half_confidence_rounds_away_from_zero(self) -> None:
        self.assertEqual(compute_delta("angry", 50), -2)

    def test_rounding_is_symmetric(self) -> None:
        self.assertEqual(round_half_away(1.5), 2)
        self.assertEqual(round_half_away(-1.5), -2)
        self.assertEqual(round_half_away(0.49), 0)
        self.assertEqual(round_half_away(-0.5), -1)

    def test_unknown_emotion_scores_zero(self) -> None:
        self.assertEqual(compute_delta("confused", 100), 0)
        self.assertEqual(compute_delta(None, 100), 0)

    def test_classifier_aliases(self) -> None:
        self.assertEqual(normalize_emotion("Fear"), "fearful")
        self.assertEqual(normalize_emotion("surprise"), "surprised")
        self.assertEqual(compute_delta("disgust", 100), -2)

    def test_confidence_is_clamped(self) -> None:
        self.assertEqual(clamp_confidence(140), 100.0)
        self.assertEqual(clamp_confidence(-3), 0.0)
        self.assertEqual(clamp_confidence("n/a"), 0.0)
        self.assertEqual(clamp_confidence(float("nan")), 0.0)


if __name__ == "__main__":
    unittest.main()
