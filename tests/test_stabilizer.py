import unittest

from vision.stabilizer import TrackingSession


class TrackingSessionTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session = TrackingSession(session_id=7)

    def test_same_emotion_inside_throttle_counts_once(self) -> None:
        first = self.session.observe("Me", "happy", 90, now_ms=1_000)
        second = self.session.observe("Me", "happy", 95, now_ms=1_500)
        agg = self.session.get("Me")

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(agg.histogram, {"happy": 1})
        self.assertEqual(agg.detections, 1)
        self.assertEqual(agg.samples, 2)
        self.assertEqual(agg.last_confidence, 95)
        self.assertEqual(agg.score, 2)

    def test_emotion_change_always_counts(self) -> None:
        self.session.observe("Me", "happy", 90, now_ms=1_000)
        event = self.session.observe("Me", "sad", 50, now_ms=1_010)
        agg = self.session.get("Me")

        self.assertEqual(event["emotion"], "sad")
        self.assertEqual(event["delta"], -1)
        self.assertEqual(agg.histogram, {"happy": 1, "sad": 1})
        self.assertEqual(agg.score, 1)

    def test_same_emotion_after_throttle_counts_again(self) -> None:
        self.session.observe("Me", "neutral", 80, now_ms=0)
        self.assertIsNotNone(self.session.observe("Me", "neutral", 80, now_ms=800))
        self.assertEqual(self.session.get("Me").histogram, {"neutral": 2})

    def test_identities_are_independent(self) -> None:
        self.session.observe("Me", "happy", 100, now_ms=0)
        self.assertIsNotNone(self.session.observe("You", "happy", 100, now_ms=10))
        self.assertEqual(self.session.total_score(), 4)

    def test_event_payload(self) -> None:
        event = self.session.observe(None, "Fear", 150, now_ms=0)
        self.assertEqual(event["face_label"], "unknown")
        self.assertEqual(event["emotion"], "fearful")
        self.assertEqual(event["confidence"], 100.0)
        self.assertEqual(event["delta"], -1)
        self.assertEqual(event["session_id"], 7)
        self.assertTrue(event["timestamp"].startswith("1970-01-01T00:00:00"))

    def test_snapshot(self) -> None:
        self.session.observe("Me", "happy", 100, now_ms=0)
        snap = self.session.snapshot()
        self.assertEqual(snap["session_id"], 7)
        self.assertEqual(snap["total_score"], 2)
        self.assertEqual(snap["faces"]["Me"]["detections"], 1)


if __name__ == "__main__":
    unittest.main()
