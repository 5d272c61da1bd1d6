from __future__ import annotations

import dataclasses
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

from estatesync.errors import (
    EstateSyncError,
    RecordImportError,
    RecordResolutionError,
    TransactionError,
    ValidationError,
)
from estatesync.kinds import (
    BUILDING_INFO_SPEC,
    INSPECTION_SPEC,
    KIND_NAMES,
    KIND_ORDER,
    PROPERTIES,
    TENANT_SPEC,
    UNIT_SPEC,
    KindSpec,
    get_spec,
)
from estatesync.matcher import ReferenceResolver, match
from estatesync.models import DEFAULT_SCHEMA_VERSION, serialize_datetime
from estatesync.preview import ChangePreview, build_preview, make_key_fn, property_index
from estatesync.records import METADATA_FIELDS, EntityRecord, PropertyRecord, UnitRecord
from estatesync.snapshot import ImportSnapshot, content_hash, parse_snapshot
from estatesync.state_store import StateStore, StoreTransaction
from estatesync.token_store import ConfirmationToken, ConfirmationTokenStore

logger = logging.getLogger(__name__)

AUDIT_ENTITY = "DATA_GOVERNANCE"


@dataclass
class KindSummary:
    created: int = 0
    updated: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"created": self.created, "updated": self.updated, "skipped": self.skipped}


@dataclass
class ImportSummary:
    kinds: dict[str, KindSummary] = field(default_factory=lambda: {name: KindSummary() for name in KIND_NAMES})

    def for_kind(self, name: str) -> KindSummary:
        return self.kinds.setdefault(name, KindSummary())

    @property
    def total_created(self) -> int:
        return sum(item.created for item in self.kinds.values())

    @property
    def total_updated(self) -> int:
        return sum(item.updated for item in self.kinds.values())

    def to_dict(self) -> dict[str, dict[str, int]]:
        return {name: item.to_dict() for name, item in self.kinds.items()}


@dataclass(frozen=True)
class ApprovedKind:
    creates: frozenset[int] = frozenset()
    updates: frozenset[str] = frozenset()


def parse_approved_changes(payload: Mapping[str, Any] | None) -> dict[str, ApprovedKind] | None:
    """``None`` approves everything. Kinds missing from the mapping approve nothing."""
    if payload is None:
        return None
    approvals: dict[str, ApprovedKind] = {}
    for name in KIND_NAMES:
        entry = payload.get(name)
        if not isinstance(entry, Mapping):
            continue
        try:
            creates = frozenset(int(value) for value in entry.get("creates") or [])
            updates = frozenset(str(value) for value in entry.get("updates") or [])
        except (TypeError, ValueError) as exc:
            raise ValidationError([f"Invalid approved changes for {name}"]) from exc
        approvals[name] = ApprovedKind(creates=creates, updates=updates)
    return approvals


@dataclass
class ImportContext:
    """State of one apply: the open transaction, id remapping and counters."""

    tx: StoreTransaction
    actor_id: str
    approvals: dict[str, ApprovedKind] | None
    resolver: ReferenceResolver
    label_index: Mapping[str, Mapping[str, EntityRecord]]
    properties: dict[tuple[str, str], str] = field(default_factory=dict)
    summary: ImportSummary = field(default_factory=ImportSummary)

    def create_approved(self, kind: str, index: int) -> bool:
        if self.approvals is None:
            return True
        approved = self.approvals.get(kind)
        return approved is not None and index in approved.creates

    def update_approved(self, kind: str, live_id: str) -> bool:
        if self.approvals is None:
            return True
        approved = self.approvals.get(kind)
        return approved is not None and live_id in approved.updates


@dataclass(frozen=True)
class PreviewResponse:
    token: ConfirmationToken
    snapshot: ImportSnapshot
    preview: ChangePreview

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": True,
            "confirmationToken": self.token.token,
            "expiresAt": serialize_datetime(self.token.expires_at),
            "schemaVersion": self.snapshot.schema_version,
            "recordCounts": dict(self.snapshot.record_counts),
            "warnings": list(self.preview.warnings),
            "changePreview": self.preview.to_dict(),
        }


class ImportService:
    def __init__(
        self,
        state_store: StateStore,
        token_store: ConfirmationTokenStore,
        *,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        transaction_timeout_seconds: float = 30,
    ) -> None:
        self.state_store = state_store
        self.token_store = token_store
        self.schema_version = schema_version
        self.transaction_timeout_seconds = transaction_timeout_seconds

    def validate(self, content: str, *, actor_id: str = "") -> PreviewResponse:
        snapshot = parse_snapshot(content, self.schema_version)
        preview = build_preview(self.state_store.current_state(), snapshot)
        token = self.token_store.issue(snapshot.content_hash)
        self.state_store.record_audit_event(
            action="VALIDATE_IMPORT",
            actor_id=actor_id,
            entity=AUDIT_ENTITY,
            details={
                "message": "Validated import file with change preview",
                "schemaVersion": snapshot.schema_version,
                "recordCounts": dict(snapshot.record_counts),
                "changePreviewSummary": {"creates": preview.total_creates, "updates": preview.total_updates},
            },
        )
        logger.info(
            "Validated import: %s creates, %s updates pending confirmation",
            preview.total_creates,
            preview.total_updates,
        )
        return PreviewResponse(token=token, snapshot=snapshot, preview=preview)

    def confirm(
        self,
        content: str,
        token: str,
        approved_changes: Mapping[str, Any] | None = None,
        *,
        actor_id: str = "",
    ) -> ImportSummary:
        approvals = parse_approved_changes(approved_changes)
        # The token is spent before the transaction, so a failed import still consumes it.
        self.token_store.redeem(token, content_hash(content))
        snapshot = parse_snapshot(content, self.schema_version)

        self.state_store.record_audit_event(
            action="IMPORT_DATA_START",
            actor_id=actor_id,
            entity=AUDIT_ENTITY,
            details={
                "message": "Starting data import",
                "schemaVersion": snapshot.schema_version,
                "recordCounts": dict(snapshot.record_counts),
            },
        )
        started = time.monotonic()
        try:
            with self.state_store.transaction(self.transaction_timeout_seconds) as tx:
                context = self._new_context(tx, snapshot, approvals, actor_id)
                for spec in KIND_ORDER:
                    self._apply_kind(context, spec, snapshot.records(spec.name))
        except EstateSyncError as exc:
            logger.exception("Import rolled back")
            self._record_failure(actor_id, exc.message)
            raise
        except sqlite3.Error as exc:
            logger.exception("Import transaction failed")
            self._record_failure(actor_id, "transaction rolled back")
            raise TransactionError(detail=str(exc)) from exc

        summary = context.summary
        duration_ms = int((time.monotonic() - started) * 1000)
        self.state_store.record_audit_event(
            action="IMPORT_DATA_COMPLETE",
            actor_id=actor_id,
            entity=AUDIT_ENTITY,
            details={
                "message": "Data import completed successfully",
                "schemaVersion": snapshot.schema_version,
                "summary": summary.to_dict(),
                "durationMs": duration_ms,
            },
        )
        logger.info(
            "Import complete in %sms: %s created, %s updated",
            duration_ms,
            summary.total_created,
            summary.total_updated,
        )
        return summary

    def _record_failure(self, actor_id: str, message: str) -> None:
        self.state_store.record_audit_event(
            action="IMPORT_DATA_FAILED",
            actor_id=actor_id,
            entity=AUDIT_ENTITY,
            details={"message": "Data import failed", "error": message},
        )

    def _new_context(
        self,
        tx: StoreTransaction,
        snapshot: ImportSnapshot,
        approvals: dict[str, ApprovedKind] | None,
        actor_id: str,
    ) -> ImportContext:
        state = tx.current_state()
        live_ids = {name: [record.id for record in records] for name, records in state.items()}
        properties = property_index(state.get(PROPERTIES, []))
        return ImportContext(
            tx=tx,
            actor_id=actor_id,
            approvals=approvals,
            resolver=ReferenceResolver(live_ids),
            label_index=snapshot.index(),
            properties=properties,
        )

    def _apply_kind(self, context: ImportContext, spec: KindSpec, records: list[EntityRecord]) -> None:
        live = context.tx.fetch_all(spec.record_cls)
        key_fn = make_key_fn(spec, context.resolver, context.properties, context.label_index, strict=False)
        result = match(live, records, key_fn, spec.natural_key)
        matched = {id(record): existing for existing, record in result.matched_pairs}
        counts = context.summary.for_kind(spec.name)

        create_index = 0
        for record in records:
            existing = matched.get(id(record))
            try:
                if existing is not None:
                    if self._apply_update(context, spec, existing, record):
                        counts.updated += 1
                    else:
                        counts.skipped += 1
                    # Skipped parents still map so approved children resolve.
                    context.resolver.register(spec.name, record.id, existing.id)
                    continue
                index = create_index
                create_index += 1
                if not context.create_approved(spec.name, index):
                    counts.skipped += 1
                    continue
                new_id = self._apply_create(context, spec, record)
                context.resolver.register(spec.name, record.id, new_id)
                context.resolver.add_live(spec.name, new_id)
                counts.created += 1
            except (EstateSyncError, sqlite3.OperationalError):
                raise
            except Exception as exc:
                raise RecordImportError(spec.label, self._describe(spec, record), exc) from exc

    def _describe(self, spec: KindSpec, record: EntityRecord) -> str:
        return repr(str(getattr(record, spec.error_field, "") or ""))

    def _parents(self, context: ImportContext, spec: KindSpec, record: EntityRecord) -> dict[str, str]:
        parents: dict[str, str] = {}
        for attr, parent_kind in spec.parents:
            reference = getattr(record, attr)
            live_id = context.resolver.translate(parent_kind, reference)
            parent_cls = get_spec(parent_kind).record_cls
            if not context.tx.exists(parent_cls, live_id):
                raise RecordResolutionError(spec.label, spec.identify(record, context.label_index), parent_kind, reference)
            parents[attr] = live_id
        return parents

    def _unit_property(self, context: ImportContext, record: UnitRecord) -> str:
        nested = record.property
        if nested is not None:
            key = (nested.name, nested.address)
            found = context.properties.get(key)
            if not found:
                existing = context.tx.find_property(nested.name, nested.address)
                if existing is not None:
                    found = existing.id
                else:
                    created = context.tx.insert(
                        dataclasses.replace(nested, id="", created_at=None, updated_at=None)
                    )
                    found = created.id
                    logger.debug("Created property %s for imported unit", found)
                context.properties[key] = found
            return found
        if context.tx.exists(PropertyRecord, record.property_id):
            return record.property_id
        raise RecordResolutionError(
            UNIT_SPEC.label,
            UNIT_SPEC.identify(record, context.label_index),
            PROPERTIES,
            record.property_id,
        )

    def _apply_update(self, context: ImportContext, spec: KindSpec, existing: EntityRecord, record: EntityRecord) -> bool:
        if not context.update_approved(spec.name, existing.id):
            return False
        self._parents(context, spec, record)
        values = record.filled_values(spec.write_fields)
        if spec is BUILDING_INFO_SPEC:
            values["updated_by_id"] = context.actor_id or None
        context.tx.update(spec.record_cls, existing.id, values)
        if spec is INSPECTION_SPEC:
            context.tx.replace_inspection_items(existing.id, record.items)
        return True

    def _apply_create(self, context: ImportContext, spec: KindSpec, record: EntityRecord) -> str:
        changes: dict[str, Any] = dict(self._parents(context, spec, record))
        if spec is UNIT_SPEC:
            changes["property_id"] = self._unit_property(context, record)
        if spec is BUILDING_INFO_SPEC:
            changes["updated_by_id"] = context.actor_id or None
        if spec is TENANT_SPEC:
            changes["role"] = "TENANT"
        for name in METADATA_FIELDS - {"id", "updated_by_id"}:
            if name in record.columns():
                changes[name] = None
        candidate = dataclasses.replace(record, id="", **changes)
        candidate = dataclasses.replace(candidate, **candidate.filled_values(candidate.columns()))
        stored = context.tx.insert(candidate)
        if spec is INSPECTION_SPEC:
            context.tx.replace_inspection_items(stored.id, record.items)
        return stored.id
