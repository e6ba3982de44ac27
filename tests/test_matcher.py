import unittest

import numpy as np

from vision.matcher import FaceMatcher, UNKNOWN


class FaceMatcherTestCase(unittest.TestCase):
    def test_best_of_several_samples(self) -> None:
        rng = np.random.default_rng(0)
        a1, a2, b = (rng.normal(size=64) for _ in range(3))
        m = FaceMatcher.from_records([
            {"label": "Me", "descriptor": a1.tolist()},
            {"label": "Me", "descriptor": a2.tolist()},
            {"label": "You", "descriptor": b.tolist()},
            {"label": "", "descriptor": [1.0]},
        ])
        self.assertEqual(len(m), 3)
        self.assertEqual(m.labels, ["Me", "You"])
        label, sim = m.best_match(a2 * 3.0)
        self.assertEqual(label, "Me")
        self.assertAlmostEqual(sim, 1.0, places=4)

    def test_unknown_below_threshold_or_shape_mismatch(self) -> None:
        m = FaceMatcher(threshold=0.9)
        m.add("Me", [1.0, 0.0])
        self.assertEqual(m.best_match([0.0, 1.0])[0], UNKNOWN)
        self.assertEqual(m.best_match([1.0, 0.0, 0.0])[0], UNKNOWN)
        self.assertEqual(m.best_match(None), (UNKNOWN, 0.0))


if __name__ == "__main__":
    unittest.main()
