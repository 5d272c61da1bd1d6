from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Union

logger = logging.getLogger(__name__)

WEEKLY = "weekly"
BIWEEKLY = "biweekly"
FIRST_THIRD = "first_third"

FREQUENCY_CAPS = {WEEKLY: 13, BIWEEKLY: 7, FIRST_THIRD: 6}
FREQUENCY_PHRASES = {
    WEEKLY: "every week",
    BIWEEKLY: "every 2 weeks",
    FIRST_THIRD: "1st & 3rd of month",
}

GARBAGE = "garbage"
RECYCLING = "recycling"
COMPOST = "compost"
BULK_PICKUP = "bulk_pickup"

COLLECTION_LABELS = {
    GARBAGE: "Garbage Collection",
    RECYCLING: "Recycling Collection",
    COMPOST: "Compost Collection",
    BULK_PICKUP: "Bulk Pickup",
}

# 0 is Sunday.
DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")

# Searched in order; the first substring hit wins.
_DAY_TOKENS = (
    ("sunday", 0),
    ("sun", 0),
    ("monday", 1),
    ("mon", 1),
    ("tuesday", 2),
    ("tue", 2),
    ("tues", 2),
    ("wednesday", 3),
    ("wed", 3),
    ("thursday", 4),
    ("thu", 4),
    ("thur", 4),
    ("thurs", 4),
    ("friday", 5),
    ("fri", 5),
    ("saturday", 6),
    ("sat", 6),
)

_PHRASE_SPLIT = re.compile(r"[,;\n]")


@dataclass(frozen=True)
class RecurrenceRule:
    collection_type: str
    days_of_week: tuple[int, ...]
    frequency: str = WEEKLY
    free_text: bool = False

    @property
    def label(self) -> str:
        return COLLECTION_LABELS.get(self.collection_type, COLLECTION_LABELS[GARBAGE])

    @property
    def cap(self) -> int:
        return FREQUENCY_CAPS.get(self.frequency, 0)

    def describe(self, building_name: str, weekday: int) -> str:
        tail = "Please ensure items are placed at the designated collection area by 7:00 AM."
        if self.free_text:
            return f"{self.label} for {building_name}. {tail}"
        day_name = DAY_NAMES[weekday] if 0 <= weekday < len(DAY_NAMES) else "Unknown"
        phrase = FREQUENCY_PHRASES.get(self.frequency, self.frequency)
        return f"{self.label} for {building_name} ({day_name}s, {phrase}). {tail}"


@dataclass(frozen=True)
class StructuredSchedule:
    entries: tuple[RecurrenceRule, ...]

    def rules(self) -> list[RecurrenceRule]:
        return list(self.entries)


@dataclass(frozen=True)
class FreeTextSchedule:
    text: str

    def rules(self) -> list[RecurrenceRule]:
        return parse_free_text(self.text)


RecurrenceSource = Union[StructuredSchedule, FreeTextSchedule]


def js_weekday(value: date) -> int:
    return (value.weekday() + 1) % 7


def _include(rule: RecurrenceRule, week_index: int, current: date) -> bool:
    if rule.frequency == WEEKLY:
        return True
    if rule.frequency == BIWEEKLY:
        return week_index % 2 == 0
    if rule.frequency == FIRST_THIRD:
        week_of_month = (current.day + 6) // 7
        return week_of_month in (1, 3)
    return False


def expand_occurrences(rule: RecurrenceRule, window_start: date, window_end: date) -> list[tuple[int, date]]:
    """``(weekday, date)`` pairs for ``rule`` inside the inclusive window, sorted by date."""
    cap = rule.cap
    occurrences: list[tuple[int, date]] = []
    for weekday in dict.fromkeys(rule.days_of_week):
        if not 0 <= weekday <= 6:
            continue
        current = window_start + timedelta(days=(weekday - js_weekday(window_start)) % 7)
        counter = 0
        week_index = 0
        while current <= window_end and counter < cap:
            if _include(rule, week_index, current):
                occurrences.append((weekday, current))
                counter += 1
            current += timedelta(weeks=1)
            week_index += 1
    occurrences.sort(key=lambda item: (item[1], item[0]))
    return occurrences


def expand(rule: RecurrenceRule, window_start: date, window_end: date) -> list[date]:
    return [day for _, day in expand_occurrences(rule, window_start, window_end)]


def _collection_type(phrase: str) -> str:
    if "recycl" in phrase:
        return RECYCLING
    if "garbage" in phrase or "trash" in phrase or "waste" in phrase:
        return GARBAGE
    if "compost" in phrase or "organic" in phrase:
        return COMPOST
    if "bulk" in phrase or "large" in phrase:
        return BULK_PICKUP
    return GARBAGE


def parse_free_text(text: str | None) -> list[RecurrenceRule]:
    """One weekly rule per phrase that names a day. Phrases without a day are ignored."""
    rules: list[RecurrenceRule] = []
    for raw in _PHRASE_SPLIT.split((text or "").lower()):
        phrase = raw.strip()
        if not phrase:
            continue
        day = next((number for token, number in _DAY_TOKENS if token in phrase), None)
        if day is None:
            continue
        rules.append(RecurrenceRule(_collection_type(phrase), (day,), WEEKLY, free_text=True))
    return rules


def _structured_rules(payload: Any) -> tuple[RecurrenceRule, ...] | None:
    if not isinstance(payload, dict) or not isinstance(payload.get("entries"), list):
        return None
    rules: list[RecurrenceRule] = []
    for entry in payload["entries"]:
        if not isinstance(entry, dict):
            continue
        days = entry.get("days") or []
        if not isinstance(days, list):
            continue
        valid_days = tuple(
            day for day in days if isinstance(day, int) and not isinstance(day, bool) and 0 <= day <= 6
        )
        if not valid_days:
            continue
        rules.append(
            RecurrenceRule(
                collection_type=str(entry.get("type") or GARBAGE),
                days_of_week=valid_days,
                frequency=str(entry.get("frequency") or WEEKLY),
            )
        )
    return tuple(rules)


def parse_schedule(structured: str | None, free_text: str | None = None) -> RecurrenceSource | None:
    """Pick the schedule source for a building.

    Structured JSON wins whenever it parses. A structured value that is not
    JSON falls back to ``free_text`` and, failing that, is read as free text
    itself. The two sources are never merged. ``None`` means no schedule.
    """
    structured = (structured or "").strip()
    free_text = (free_text or "").strip()
    if structured:
        try:
            rules = _structured_rules(json.loads(structured))
        except ValueError:
            rules = None
        if rules is not None:
            return StructuredSchedule(entries=rules)
        logger.debug("Schedule is not structured JSON, using free-text parsing")
    if free_text:
        return FreeTextSchedule(text=free_text)
    if structured:
        return FreeTextSchedule(text=structured)
    return None
