from __future__ import annotations

import math
import unittest

from timeguard.services.geo import (
    DEFAULT_GEOFENCE_RADIUS_M,
    EARTH_RADIUS_M,
    distance_m,
    effective_radius_m,
    evaluate_geofence,
)


def _north_of(lat: float, meters: float) -> float:
    return lat + math.degrees(meters / EARTH_RADIUS_M)


class DistanceTests(unittest.TestCase):
    def test_distance_to_same_point_is_zero(self) -> None:
        for lat, lon in [(0.0, 0.0), (40.0, -74.0), (-33.8688, 151.2093), (89.9, 179.9)]:
            self.assertEqual(distance_m(lat, lon, lat, lon), 0.0)

    def test_distance_is_symmetric(self) -> None:
        forward = distance_m(40.7128, -74.0060, 51.5074, -0.1278)
        backward = distance_m(51.5074, -0.1278, 40.7128, -74.0060)
        self.assertAlmostEqual(forward, backward, places=6)

    def test_distance_is_never_negative(self) -> None:
        self.assertGreater(distance_m(10.0, 10.0, -10.0, -10.0), 0.0)

    def test_antipodal_points_stay_finite(self) -> None:
        result = distance_m(0.0, 0.0, 0.0, 180.0)
        self.assertAlmostEqual(result, math.pi * EARTH_RADIUS_M, delta=1.0)

    def test_one_degree_of_latitude(self) -> None:
        self.assertAlmostEqual(distance_m(0.0, 0.0, 1.0, 0.0), 111194.93, delta=0.5)


class GeofenceTests(unittest.TestCase):
    def test_point_exactly_on_boundary_is_within(self) -> None:
        result = evaluate_geofence(_north_of(0.0, 100), 0.0, 0.0, 0.0, 100)
        self.assertEqual(result.distance_m, 100)
        self.assertTrue(result.is_within)

    def test_point_one_meter_past_boundary_is_outside(self) -> None:
        result = evaluate_geofence(_north_of(0.0, 101), 0.0, 0.0, 0.0, 100)
        self.assertEqual(result.distance_m, 101)
        self.assertFalse(result.is_within)

    def test_radius_defaults_to_100_meters(self) -> None:
        self.assertEqual(evaluate_geofence(0.0, 0.0, 0.0, 0.0).radius_m, 100)
        self.assertEqual(evaluate_geofence(0.0, 0.0, 0.0, 0.0, None).radius_m, DEFAULT_GEOFENCE_RADIUS_M)
        self.assertEqual(effective_radius_m(0), DEFAULT_GEOFENCE_RADIUS_M)
        self.assertEqual(effective_radius_m(-5), DEFAULT_GEOFENCE_RADIUS_M)
        self.assertEqual(effective_radius_m(250), 250)

    def test_nan_coordinates_are_never_within(self) -> None:
        result = evaluate_geofence(float("nan"), 0.0, 0.0, 0.0, 100)
        self.assertFalse(result.is_within)
        self.assertIsNone(result.distance_m)

    def test_to_dict_shape(self) -> None:
        payload = evaluate_geofence(40.0, -74.0, 40.0, -74.0, 50).to_dict()
        self.assertEqual(payload, {"is_within": True, "distance_m": 0, "radius_m": 50})


if __name__ == "__main__":
    unittest.main()
