import unittest
from datetime import date, datetime, timezone

from icalendar import Calendar as ICalendar

from estatesync.calendar_feed import event_uid, render_calendar
from estatesync.models import CalendarEvent


def _event(**overrides) -> CalendarEvent:
    values = {
        "title": "Garbage Collection - Maple Court",
        "event_date": date(2024, 1, 1),
        "source_type": "GARBAGE_SCHEDULE",
        "source_id": "b-1",
        "description": "Garbage Collection for Maple Court",
    }
    values.update(overrides)
    return CalendarEvent(**values)


class CalendarFeedTests(unittest.TestCase):
    def test_renders_all_day_events(self) -> None:
        text = render_calendar(
            [_event(), _event(event_date=date(2024, 1, 8))],
            "Building Calendar - Maple Court",
            now=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        calendar_obj = ICalendar.from_ical(text)
        self.assertEqual(str(calendar_obj.get("X-WR-CALNAME")), "Building Calendar - Maple Court")
        vevents = [component for component in calendar_obj.walk() if component.name == "VEVENT"]
        self.assertEqual(len(vevents), 2)
        first = vevents[0]
        self.assertEqual(first.decoded("DTSTART"), date(2024, 1, 1))
        self.assertEqual(first.decoded("DTEND"), date(2024, 1, 2))
        self.assertEqual(str(first.get("SUMMARY")), "Garbage Collection - Maple Court")

    def test_uid_is_stable_across_regeneration(self) -> None:
        first = event_uid(_event(id="a"))
        second = event_uid(_event(id="b"))
        self.assertEqual(first, second)
        self.assertTrue(first.startswith("garbage_schedule-b-1-20240101-"))
        self.assertNotEqual(first, event_uid(_event(title="Recycling Collection - Maple Court")))

    def test_private_events_are_hidden_by_default(self) -> None:
        hidden = _event(is_visible_to_tenant=False)
        self.assertNotIn("BEGIN:VEVENT", render_calendar([hidden], "Feed"))
        self.assertIn("BEGIN:VEVENT", render_calendar([hidden], "Feed", include_private=True))


if __name__ == "__main__":
    unittest.main()
