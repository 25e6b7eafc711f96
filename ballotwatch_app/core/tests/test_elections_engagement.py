import datetime

from django.test import SimpleTestCase, override_settings

from core.elections_engagement import build_engagement_curve


def _utc(hour: int, minute: int = 0) -> datetime.datetime:
    return datetime.datetime(2026, 7, 14, hour, minute, tzinfo=datetime.UTC)


@override_settings(TIME_ZONE="UTC", ENGAGEMENT_CURVE_FIRST_HOUR=8, ENGAGEMENT_CURVE_LAST_HOUR=23)
class EngagementCurveTests(SimpleTestCase):
    def test_left_cumulative_counts(self) -> None:
        curve = build_engagement_curve([_utc(9, 15), _utc(9, 45), _utc(14, 5)])
        by_slot = {slot.slot: slot.cumulative_votes for slot in curve}

        self.assertEqual(len(curve), 16)
        self.assertEqual(curve[0].slot, "08:00")
        self.assertEqual(curve[-1].slot, "23:00")
        self.assertEqual(by_slot["08:00"], 0)
        self.assertEqual(by_slot["09:00"], 0)
        self.assertEqual(by_slot["10:00"], 2)
        self.assertEqual(by_slot["14:00"], 2)
        self.assertEqual(by_slot["15:00"], 3)
        self.assertEqual(by_slot["23:00"], 3)

    def test_empty_input_is_all_zero(self) -> None:
        curve = build_engagement_curve([])

        self.assertEqual(len(curve), 16)
        self.assertTrue(all(slot.cumulative_votes == 0 for slot in curve))

    def test_curve_is_non_decreasing(self) -> None:
        stamps = [_utc(hour, minute) for hour, minute in ((23, 59), (0, 1), (12, 0), (8, 0), (17, 30), (12, 30))]

        values = [slot.cumulative_votes for slot in build_engagement_curve(stamps)]

        self.assertEqual(values, sorted(values))

    def test_early_morning_ballots_count_in_every_slot(self) -> None:
        curve = build_engagement_curve([_utc(3), _utc(7, 59)])

        self.assertEqual(curve[0].cumulative_votes, 2)

    def test_hours_are_bucketed_in_local_time(self) -> None:
        # 08:30 UTC is 10:30 in Berlin during summer time.
        curve = build_engagement_curve([_utc(8, 30)], tz_name="Europe/Berlin")
        by_slot = {slot.slot: slot.cumulative_votes for slot in curve}

        self.assertEqual(by_slot["10:00"], 0)
        self.assertEqual(by_slot["11:00"], 1)

    def test_slot_serialization(self) -> None:
        self.assertEqual(build_engagement_curve([])[2].as_dict(), {"slot": "10:00", "cumulative_votes": 0})

    def test_invalid_window_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            build_engagement_curve([], first_hour=20, last_hour=8)
