from datetime import datetime, timezone

from django.test import SimpleTestCase

from common.utils import (
    ParticipantStatus,
    classify_status,
    compute_leave_by,
    distance_km,
    format_distance,
    format_eta,
    has_moved_significantly,
)


class DistanceTests(SimpleTestCase):
    POINTS = [
        (28.6139, 77.2090),
        (51.5074, -0.1278),
        (-33.8688, 151.2093),
        (0.0, 0.0),
        (89.9, 179.9),
    ]

    def test_distance_is_symmetric(self):
        for a in self.POINTS:
            for b in self.POINTS:
                self.assertAlmostEqual(distance_km(*a, *b), distance_km(*b, *a), places=9)

    def test_distance_to_self_is_zero(self):
        for point in self.POINTS:
            self.assertEqual(distance_km(*point, *point), 0.0)

    def test_known_distance(self):
        # London -> Paris is roughly 344 km
        self.assertAlmostEqual(distance_km(51.5074, -0.1278, 48.8566, 2.3522), 343.5, delta=1.5)

    def test_antipodal_points_do_not_crash(self):
        self.assertAlmostEqual(distance_km(0, 0, 0, 180), 3.141592653589793 * 6371, places=3)

    def test_has_moved_significantly(self):
        self.assertFalse(has_moved_significantly(0, 0, 0, 0))
        # ~167 m apart
        self.assertTrue(has_moved_significantly(0, 0, 0, 0.0015))
        self.assertFalse(has_moved_significantly(0, 0, 0, 0.0005))

    def test_has_moved_threshold_is_inclusive(self):
        d = distance_km(0, 0, 0, 0.0015)
        self.assertTrue(has_moved_significantly(0, 0, 0, 0.0015, threshold_km=d))


class ClassifyStatusTests(SimpleTestCase):
    def test_bucket_boundaries(self):
        cases = [
            (0.0, ParticipantStatus.ARRIVED),
            (0.0999, ParticipantStatus.ARRIVED),
            (0.1, ParticipantStatus.CLOSE),
            (0.999, ParticipantStatus.CLOSE),
            (1.0, ParticipantStatus.MOVING),
            (9.999, ParticipantStatus.MOVING),
            (10.0, ParticipantStatus.FAR),
            (12000.0, ParticipantStatus.FAR),
        ]
        for distance, expected in cases:
            with self.subTest(distance=distance):
                self.assertEqual(classify_status(distance), expected)

    def test_status_values_are_wire_strings(self):
        self.assertEqual(classify_status(0.05).value, "arrived")


class FormattingTests(SimpleTestCase):
    def test_format_distance(self):
        self.assertEqual(format_distance(0.085), "85m away")
        self.assertEqual(format_distance(2.34), "2.3 km away")

    def test_format_eta(self):
        self.assertEqual(format_eta(0.4), "Arriving now")
        self.assertEqual(format_eta(12), "12 min")
        self.assertEqual(format_eta(65), "1h 5m")
        self.assertEqual(format_eta(120), "2h")
        self.assertEqual(format_eta(119.8), "2h")


class LeaveByTests(SimpleTestCase):
    EVENT_AT = datetime(2025, 1, 1, 18, 0, tzinfo=timezone.utc)

    def test_leave_by_deadline(self):
        deadline = compute_leave_by(
            self.EVENT_AT, 20, now=datetime(2025, 1, 1, 17, 0, tzinfo=timezone.utc)
        )
        self.assertEqual(deadline.target_arrival, datetime(2025, 1, 1, 17, 55, tzinfo=timezone.utc))
        self.assertEqual(deadline.leave_by, datetime(2025, 1, 1, 17, 35, tzinfo=timezone.utc))
        self.assertFalse(deadline.should_leave_now)

    def test_should_leave_after_deadline(self):
        deadline = compute_leave_by(
            self.EVENT_AT, 20, now=datetime(2025, 1, 1, 17, 40, tzinfo=timezone.utc)
        )
        self.assertTrue(deadline.should_leave_now)

    def test_should_leave_exactly_at_deadline(self):
        deadline = compute_leave_by(
            self.EVENT_AT, 20, now=datetime(2025, 1, 1, 17, 35, tzinfo=timezone.utc)
        )
        self.assertTrue(deadline.should_leave_now)
        self.assertEqual(deadline.minutes_until_leave(datetime(2025, 1, 1, 17, 25, tzinfo=timezone.utc)), 10)
