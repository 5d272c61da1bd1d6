from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from typing import Iterable

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from estatesync.models import CalendarEvent, utc_now

PRODID = "-//EstateSync//Building Calendar//EN"


def event_uid(event: CalendarEvent) -> str:
    """Stable across regenerations, so subscribers see updates instead of duplicates."""
    digest = hashlib.sha1(event.title.encode("utf-8")).hexdigest()[:8]
    return f"{event.source_type.lower()}-{event.source_id}-{event.event_date:%Y%m%d}-{digest}@estatesync"


def _vevent(event: CalendarEvent, stamp: datetime) -> ICEvent:
    vevent = ICEvent()
    vevent.add("UID", event_uid(event))
    vevent.add("DTSTAMP", stamp)
    vevent.add("SUMMARY", event.title)
    if event.description:
        vevent.add("DESCRIPTION", event.description)
    vevent.add("DTSTART", event.event_date)
    vevent.add("DTEND", event.event_date + timedelta(days=1))
    if event.category:
        vevent.add("CATEGORIES", [event.category])
    vevent.add("TRANSP", "TRANSPARENT")
    return vevent


def render_calendar(
    events: Iterable[CalendarEvent],
    name: str,
    *,
    include_private: bool = False,
    now: datetime | None = None,
) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add("CALSCALE", "GREGORIAN")
    calendar_obj.add("X-WR-CALNAME", name)
    stamp = now or utc_now()
    for event in sorted(events, key=lambda item: (item.event_date, item.title)):
        if not include_private and not event.is_visible_to_tenant:
            continue
        calendar_obj.add_component(_vevent(event, stamp))
    return calendar_obj.to_ical().decode("utf-8")
