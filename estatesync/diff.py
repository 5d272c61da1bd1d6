from __future__ import annotations

import dataclasses
import json
import re
from datetime import date, datetime, timezone
from functools import singledispatch
from typing import Any, Iterable, Mapping

from estatesync.records import METADATA_FIELDS, EntityRecord, to_camel

_ISO_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?$")
_METADATA_KEYS = METADATA_FIELDS | {to_camel(name) for name in METADATA_FIELDS}


@singledispatch
def normalize(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            item.name: normalize(getattr(value, item.name))
            for item in dataclasses.fields(value)
            if item.name not in _METADATA_KEYS
        }
    return value


@normalize.register
def _(value: str) -> Any:
    text = value.strip()
    matched = _ISO_DATE_PREFIX.match(text)
    if matched is None:
        return text
    if "T" in text or " " in text:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return matched.group(1)
        return normalize(parsed)
    return matched.group(1)


@normalize.register
def _(value: datetime) -> Any:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).date().isoformat()


@normalize.register
def _(value: date) -> Any:
    return value.isoformat()


@normalize.register
def _(value: bool) -> Any:
    return value


@normalize.register
def _(value: float) -> Any:
    if value.is_integer():
        return int(value)
    return value


@normalize.register(dict)
def _(value: Mapping[str, Any]) -> Any:
    return {str(key): normalize(item) for key, item in value.items() if key not in _METADATA_KEYS}


@normalize.register(list)
@normalize.register(tuple)
def _(value: Iterable[Any]) -> Any:
    return [normalize(item) for item in value]


def canonical(value: Any) -> str:
    return json.dumps(normalize(value), sort_keys=True, ensure_ascii=False, default=str)


def _field_value(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        if name in record:
            return record[name]
        return record.get(to_camel(name))
    return getattr(record, name, None)


def diff(before: Any, after: Any, fields: Iterable[str]) -> list[str]:
    """Return the names from ``fields`` whose canonical values differ."""
    changed: list[str] = []
    for name in fields:
        if name in METADATA_FIELDS:
            continue
        if canonical(_field_value(before, name)) != canonical(_field_value(after, name)):
            changed.append(name)
    return changed


def pick(record: EntityRecord | Mapping[str, Any], names: Iterable[str]) -> dict[str, Any]:
    """Camel-cased subset of a record, JSON ready."""
    output: dict[str, Any] = {}
    for name in names:
        value = _field_value(record, name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, date):
            value = value.isoformat()
        output[to_camel(name)] = value
    return output
