from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from estatesync.errors import SCHEMA_INCOMPATIBLE, ValidationError
from estatesync.kinds import KIND_ORDER, TENANTS, KindSpec
from estatesync.models import parse_iso_datetime, schema_major, serialize_datetime, utc_now
from estatesync.records import EntityRecord, to_camel

logger = logging.getLogger(__name__)

# Order used when reporting missing sections.
REQUIRED_SECTIONS = (
    "units",
    "tenants",
    "tenancies",
    "invoices",
    "checklistItems",
    "inspections",
    "buildingInfos",
)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ImportSnapshot:
    schema_version: str
    content_hash: str
    records_by_kind: Mapping[str, list[EntityRecord]] = field(default_factory=dict)
    record_counts: Mapping[str, Any] = field(default_factory=dict)
    exported_at: datetime | None = None
    exported_by: Mapping[str, Any] | None = None

    def records(self, kind: str) -> list[EntityRecord]:
        return list(self.records_by_kind.get(kind, []))

    def index(self) -> dict[str, dict[str, EntityRecord]]:
        return {kind: {record.id: record for record in records} for kind, records in self.records_by_kind.items()}


def _parse_records(spec: KindSpec, raw_records: list[Any], errors: list[str]) -> list[EntityRecord]:
    parsed: list[EntityRecord] = []
    for position, raw in enumerate(raw_records):
        if not isinstance(raw, Mapping):
            errors.append(f"Invalid {spec.label} record at index {position}: expected an object")
            continue
        missing = [to_camel(name) for name in ("id", *spec.required_fields) if raw.get(to_camel(name)) in (None, "")]
        if missing:
            errors.append(f"Invalid {spec.label} record at index {position}: missing {', '.join(missing)}")
            continue
        try:
            parsed.append(spec.record_cls.from_dict(raw))
        except (TypeError, ValueError) as exc:
            # Record content stays out of the user-facing message.
            logger.debug("Unreadable %s record at index %s: %s", spec.label, position, exc)
            errors.append(f"Invalid {spec.label} record at index {position}: unreadable field value")
    return parsed


def parse_snapshot(content: str, system_version: str) -> ImportSnapshot:
    try:
        document = json.loads(content)
    except ValueError as exc:
        raise ValidationError([f"Failed to parse import file: {exc}"]) from exc
    if not isinstance(document, dict):
        raise ValidationError(["Failed to parse import file: expected a JSON object"])

    version = document.get("schemaVersion")
    if not version:
        raise ValidationError(["Missing schema version in import file"])
    version = str(version)
    if schema_major(version) != schema_major(system_version):
        raise ValidationError(
            [f"Incompatible schema version. Import: {version}, Current: {system_version}"],
            code=SCHEMA_INCOMPATIBLE,
        )

    data = document.get("data")
    if not isinstance(data, dict):
        data = {}
    missing = [name for name in REQUIRED_SECTIONS if data.get(name) is None]
    if missing:
        raise ValidationError([f"Missing data sections: {', '.join(missing)}"])

    errors: list[str] = []
    records_by_kind: dict[str, list[EntityRecord]] = {}
    for spec in KIND_ORDER:
        section = data[spec.name]
        if not isinstance(section, list):
            errors.append(f"Data section {spec.name} must be a list")
            continue
        records_by_kind[spec.name] = _parse_records(spec, section, errors)
    if errors:
        raise ValidationError(errors)

    try:
        exported_at = parse_iso_datetime(document.get("exportedAt"))
    except ValueError:
        exported_at = None
    counts = document.get("recordCounts")
    exported_by = document.get("exportedBy")
    return ImportSnapshot(
        schema_version=version,
        content_hash=content_hash(content),
        records_by_kind=records_by_kind,
        record_counts=counts if isinstance(counts, dict) else {},
        exported_at=exported_at,
        exported_by=exported_by if isinstance(exported_by, dict) else None,
    )


def export_snapshot(
    current_state: Mapping[str, list[EntityRecord]],
    *,
    schema_version: str,
    actor: Mapping[str, Any] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Build the export document from live records.

    Units carry their property and inspections carry items with photos, so an
    unmodified export re-imports as an all-unchanged preview.
    """
    sections: dict[str, list[dict[str, Any]]] = {}
    for spec in KIND_ORDER:
        records = current_state.get(spec.name, [])
        if spec.name == TENANTS:
            records = [record for record in records if getattr(record, "role", "TENANT") == "TENANT"]
        sections[spec.name] = [record.to_dict() for record in records]
    return {
        "schemaVersion": schema_version,
        "exportedAt": serialize_datetime(now or utc_now()),
        "exportedBy": dict(actor) if actor else None,
        "recordCounts": {name: len(records) for name, records in sections.items()},
        "data": sections,
    }


def dump_snapshot(document: Mapping[str, Any]) -> str:
    return json.dumps(document, ensure_ascii=False, indent=2)
