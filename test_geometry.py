"""
test_geometry.py: heading normalization and sonar mount geometry.

Run with:
    python3 -m pytest test_geometry.py -v
"""

import math
import random
import unittest

from geometry import (
    EPSILON,
    SONAR_ANGLES,
    SONAR_COUNT,
    bearing,
    closest_sonar_index,
    float_eq,
    normalize_angle,
    sonar_offset,
)


class TestNormalizeAngle(unittest.TestCase):

    def test_scenario_values(self):
        self.assertAlmostEqual(normalize_angle(3.2), 3.2 - 2 * math.pi, places=12)
        self.assertAlmostEqual(normalize_angle(-3.2), 2 * math.pi - 3.2, places=12)
        self.assertEqual(normalize_angle(math.pi), math.pi)
        self.assertEqual(normalize_angle(-math.pi), math.pi)

    def test_near_minus_pi_becomes_pi(self):
        self.assertEqual(normalize_angle(-math.pi + EPSILON / 2), math.pi)

    def test_range_for_random_inputs(self):
        rng = random.Random(7)
        for _ in range(2000):
            theta = normalize_angle(rng.uniform(-50.0, 50.0))
            self.assertGreater(theta, -math.pi)
            self.assertLessEqual(theta, math.pi)

    def test_multiple_turns(self):
        self.assertAlmostEqual(normalize_angle(0.5 + 6 * math.pi), 0.5, places=9)
        self.assertAlmostEqual(normalize_angle(0.5 - 6 * math.pi), 0.5, places=9)


class TestSonarGeometry(unittest.TestCase):

    def test_mount_angles(self):
        degrees = [round(math.degrees(a)) for a in SONAR_ANGLES]
        self.assertEqual(degrees, [90, 50, 30, 10, -10, -30, -50, -90])
        self.assertEqual(SONAR_COUNT, 8)

    def test_offsets_are_symmetric(self):
        for i in range(4):
            self.assertAlmostEqual(sonar_offset(i), sonar_offset(7 - i))
        self.assertAlmostEqual(sonar_offset(3), math.hypot(0.170, 0.025))

    def test_closest_sonar_index(self):
        self.assertEqual(closest_sonar_index(0.0), 3)  # ties go to the lower index
        self.assertEqual(closest_sonar_index(math.radians(85)), 0)
        self.assertEqual(closest_sonar_index(math.radians(-35)), 5)
        self.assertEqual(closest_sonar_index(math.radians(-170)), 7)


class TestHelpers(unittest.TestCase):

    def test_float_eq(self):
        self.assertTrue(float_eq(1.0, 1.0 + EPSILON / 2))
        self.assertFalse(float_eq(1.0, 1.0 + 2 * EPSILON))

    def test_bearing(self):
        self.assertAlmostEqual(bearing(0, 0, 1, 1), math.pi / 4)
        self.assertAlmostEqual(bearing(1, 0, 0, 0), math.pi)


if __name__ == "__main__":
    unittest.main(verbosity=2)
