import unittest
from datetime import date, datetime, timedelta, timezone

from teamslots.errors import ValidationError
from teamslots.slots import (
    SlotKey,
    canonical_slot,
    date_range,
    month_dates,
    month_universe,
    parse_month,
    slot_universe,
)


class TestSlotKey(unittest.TestCase):
    def test_canonical_form_has_unpadded_hour(self):
        self.assertEqual(str(SlotKey(date(2024, 1, 15), 9)), "2024-01-15-9")
        self.assertEqual(str(SlotKey(date(2024, 1, 15), 17)), "2024-01-15-17")

    def test_parse_accepts_padded_hour(self):
        self.assertEqual(SlotKey.parse("2024-01-05-09"), SlotKey(date(2024, 1, 5), 9))
        self.assertEqual(canonical_slot("2024-01-05-09"), "2024-01-05-9")

    def test_parse_round_trips(self):
        key = SlotKey.parse("2024-02-29-23")
        self.assertEqual(SlotKey.parse(str(key)), key)

    def test_rejects_bad_hour(self):
        with self.assertRaises(ValidationError):
            SlotKey(date(2024, 1, 1), 24)
        with self.assertRaises(ValidationError):
            SlotKey(date(2024, 1, 1), -1)
        with self.assertRaises(ValidationError):
            SlotKey.parse("2024-01-01-24")

    def test_rejects_bad_strings(self):
        for bad in ["", "2024-01-01", "2024-13-01-5", "2023-02-29-1", "abc", "2024-1-1-1"]:
            with self.subTest(value=bad):
                with self.assertRaises(ValidationError):
                    SlotKey.parse(bad)

    def test_rejects_datetime_as_date(self):
        with self.assertRaises(ValidationError):
            SlotKey(datetime(2024, 1, 1), 3)

    def test_ordering_is_date_then_hour(self):
        keys = [SlotKey.parse(k) for k in ["2024-01-02-1", "2024-01-01-23", "2024-01-01-10", "2024-01-01-9"]]
        self.assertEqual(
            [str(k) for k in sorted(keys)],
            ["2024-01-01-9", "2024-01-01-10", "2024-01-01-23", "2024-01-02-1"],
        )

    def test_hashable(self):
        self.assertEqual(len({SlotKey.parse("2024-01-01-1"), SlotKey.parse("2024-01-01-01")}), 1)

    def test_from_datetime_converts_to_utc(self):
        moment = datetime(2024, 1, 1, 1, 30, tzinfo=timezone(timedelta(hours=2)))
        self.assertEqual(SlotKey.from_datetime(moment), SlotKey(date(2023, 12, 31), 23))

    def test_to_datetime(self):
        self.assertEqual(
            SlotKey.parse("2024-03-10-6").to_datetime(),
            datetime(2024, 3, 10, 6, tzinfo=timezone.utc),
        )

    def test_month(self):
        self.assertEqual(SlotKey.parse("2024-03-10-6").month, "2024-03")


class TestPeriods(unittest.TestCase):
    def test_parse_month(self):
        self.assertEqual(parse_month("2024-02"), (2024, 2))

    def test_parse_month_rejects_malformed(self):
        for bad in ["2024-2", "2024-13", "2024-00", "", "Feb 2024"]:
            with self.subTest(value=bad):
                with self.assertRaises(ValidationError) as ctx:
                    parse_month(bad)
                self.assertIn("YYYY-MM", str(ctx.exception))

    def test_month_dates_handles_leap_year(self):
        self.assertEqual(len(month_dates("2024-02")), 29)
        self.assertEqual(len(month_dates("2023-02")), 28)

    def test_month_universe_size(self):
        self.assertEqual(len(month_universe("2024-01")), 31 * 24)
        self.assertEqual(len(month_universe("2024-01", range(9, 17))), 31 * 8)

    def test_slot_universe_sorted_and_deduplicated(self):
        days = [date(2024, 1, 2), date(2024, 1, 1), date(2024, 1, 2)]
        universe = slot_universe(days, [10, 9, 10])
        self.assertEqual(
            [str(k) for k in universe],
            ["2024-01-01-9", "2024-01-01-10", "2024-01-02-9", "2024-01-02-10"],
        )

    def test_date_range(self):
        self.assertEqual(len(date_range(date(2024, 1, 30), date(2024, 2, 2))), 4)
        self.assertEqual(date_range(date(2024, 1, 2), date(2024, 1, 1)), [])
