import unittest
from datetime import date, timedelta

from estatesync.recurrence import (
    BIWEEKLY,
    FIRST_THIRD,
    FreeTextSchedule,
    RecurrenceRule,
    StructuredSchedule,
    expand,
    expand_occurrences,
    parse_free_text,
    parse_schedule,
)

START = date(2024, 1, 1)
END = START + timedelta(days=90)


class ExpandTests(unittest.TestCase):
    def test_weekly_monday_and_thursday_over_ninety_days(self) -> None:
        rule = RecurrenceRule("garbage", (1, 4))
        occurrences = expand_occurrences(rule, START, END)
        mondays = [day for weekday, day in occurrences if weekday == 1]
        thursdays = [day for weekday, day in occurrences if weekday == 4]
        self.assertEqual(len(mondays), 13)
        self.assertEqual(len(thursdays), 13)
        self.assertEqual(mondays[0], date(2024, 1, 1))
        self.assertEqual(thursdays[0], date(2024, 1, 4))
        self.assertTrue(all(day.weekday() == 0 for day in mondays))
        self.assertEqual([day for _, day in occurrences], sorted(day for _, day in occurrences))

    def test_weekly_is_capped_at_thirteen(self) -> None:
        rule = RecurrenceRule("garbage", (1,))
        self.assertEqual(len(expand(rule, START, START + timedelta(days=365))), 13)

    def test_biweekly_skips_alternate_weeks(self) -> None:
        dates = expand(RecurrenceRule("recycling", (1,), BIWEEKLY), START, END)
        self.assertEqual(dates[:3], [date(2024, 1, 1), date(2024, 1, 15), date(2024, 1, 29)])
        self.assertEqual(len(dates), 7)

    def test_first_third_uses_week_of_month(self) -> None:
        dates = expand(RecurrenceRule("compost", (1,), FIRST_THIRD), START, END)
        self.assertEqual(
            dates,
            [
                date(2024, 1, 1),
                date(2024, 1, 15),
                date(2024, 2, 5),
                date(2024, 2, 19),
                date(2024, 3, 4),
                date(2024, 3, 18),
            ],
        )

    def test_window_end_is_inclusive(self) -> None:
        dates = expand(RecurrenceRule("garbage", (1,)), START, START + timedelta(days=7))
        self.assertEqual(dates, [date(2024, 1, 1), date(2024, 1, 8)])

    def test_unknown_frequency_and_bad_days_yield_nothing(self) -> None:
        self.assertEqual(expand(RecurrenceRule("garbage", (1,), "monthly"), START, END), [])
        self.assertEqual(expand(RecurrenceRule("garbage", (9,)), START, END), [])

    def test_describe_structured_and_free_text(self) -> None:
        rule = RecurrenceRule("recycling", (2,), BIWEEKLY)
        self.assertEqual(
            rule.describe("Maple Court", 2),
            "Recycling Collection for Maple Court (Tuesdays, every 2 weeks). "
            "Please ensure items are placed at the designated collection area by 7:00 AM.",
        )
        legacy = RecurrenceRule("garbage", (1,), free_text=True)
        self.assertTrue(legacy.describe("Maple Court", 1).startswith("Garbage Collection for Maple Court. "))


class ParseScheduleTests(unittest.TestCase):
    def test_free_text_phrases(self) -> None:
        rules = parse_free_text("Garbage on Monday, Recycling every Thurs; bulk items last Sat\nnotes only")
        self.assertEqual(
            [(rule.collection_type, rule.days_of_week) for rule in rules],
            [("garbage", (1,)), ("recycling", (4,)), ("bulk_pickup", (6,))],
        )
        self.assertTrue(all(rule.free_text for rule in rules))

    def test_structured_wins_over_free_text(self) -> None:
        structured = '{"entries": [{"type": "compost", "days": [3], "frequency": "biweekly"}]}'
        source = parse_schedule(structured, "Garbage on Monday")
        self.assertIsInstance(source, StructuredSchedule)
        self.assertEqual(source.rules(), [RecurrenceRule("compost", (3,), BIWEEKLY)])

    def test_invalid_structured_falls_back_to_free_text(self) -> None:
        source = parse_schedule("not json", "Garbage on Monday")
        self.assertEqual(source, FreeTextSchedule("Garbage on Monday"))
        self.assertEqual(parse_schedule("Trash on Friday"), FreeTextSchedule("Trash on Friday"))

    def test_entries_without_valid_days_are_dropped(self) -> None:
        structured = '{"entries": [{"type": "garbage", "days": []}, {"type": "garbage", "days": [7, "1"]}]}'
        self.assertEqual(parse_schedule(structured).rules(), [])

    def test_boolean_days_are_rejected(self) -> None:
        structured = '{"entries": [{"type": "garbage", "days": [true, false, 2]}]}'
        self.assertEqual(parse_schedule(structured).rules(), [RecurrenceRule("garbage", (2,), "weekly")])

    def test_empty_inputs_mean_no_schedule(self) -> None:
        self.assertIsNone(parse_schedule(None, None))
        self.assertIsNone(parse_schedule("  ", ""))


if __name__ == "__main__":
    unittest.main()
