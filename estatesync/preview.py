from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Hashable, Mapping

from estatesync.diff import diff, pick
from estatesync.errors import RecordResolutionError
from estatesync.kinds import INVOICES, KIND_ORDER, PROPERTIES, TENANTS, UNIT_SPEC, KindSpec
from estatesync.matcher import PendingParent, ReferenceResolver, match
from estatesync.records import EntityRecord, PropertyRecord, UnitRecord, to_camel
from estatesync.snapshot import ImportSnapshot

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"


@dataclass(frozen=True)
class ChangeEntry:
    action: str
    identifier: str
    after: Mapping[str, Any]
    target_id: str | None = None
    before: Mapping[str, Any] | None = None
    changed_fields: tuple[str, ...] = ()
    index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.action == CREATE:
            return {"index": self.index, "identifier": self.identifier, "data": dict(self.after)}
        return {
            "id": self.target_id,
            "identifier": self.identifier,
            "before": dict(self.before or {}),
            "after": dict(self.after),
            "changedFields": [to_camel(name) for name in self.changed_fields],
        }


@dataclass(frozen=True)
class KindPreview:
    kind: str
    creates: tuple[ChangeEntry, ...] = ()
    updates: tuple[ChangeEntry, ...] = ()
    unchanged_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "creates": [entry.to_dict() for entry in self.creates],
            "updates": [entry.to_dict() for entry in self.updates],
            "unchangedCount": self.unchanged_count,
        }


@dataclass(frozen=True)
class ChangePreview:
    kinds: tuple[KindPreview, ...]
    warnings: tuple[str, ...] = ()

    def kind(self, name: str) -> KindPreview:
        for item in self.kinds:
            if item.kind == name:
                return item
        return KindPreview(kind=name)

    @property
    def total_creates(self) -> int:
        return sum(len(item.creates) for item in self.kinds)

    @property
    def total_updates(self) -> int:
        return sum(len(item.updates) for item in self.kinds)

    @property
    def unchanged_counts(self) -> dict[str, int]:
        return {item.kind: item.unchanged_count for item in self.kinds}

    def to_dict(self) -> dict[str, Any]:
        return {item.kind: item.to_dict() for item in self.kinds}


def property_index(properties: list[PropertyRecord]) -> dict[tuple[str, str], str]:
    index: dict[tuple[str, str], str] = {}
    for item in properties:
        index.setdefault((item.name, item.address), item.id)
    return index


def _unit_property_id(
    record: UnitRecord,
    resolver: ReferenceResolver,
    properties: Mapping[tuple[str, str], str],
    identifier: str,
) -> str:
    nested = record.property
    if nested is not None:
        found = properties.get((nested.name, nested.address))
        if found:
            return found
    try:
        return resolver.resolve(PROPERTIES, record.property_id, child_kind=UNIT_SPEC.label, identifier=identifier)
    except RecordResolutionError:
        if nested is not None:
            # The property block will be created together with the unit.
            raise PendingParent(f"{PROPERTIES}:{nested.name}") from None
        raise


def resolved_parents(
    spec: KindSpec,
    record: EntityRecord,
    resolver: ReferenceResolver,
    properties: Mapping[tuple[str, str], str],
    identifier: str,
) -> dict[str, str]:
    if spec is UNIT_SPEC:
        return {"property_id": _unit_property_id(record, resolver, properties, identifier)}
    return {
        attr: resolver.resolve(parent_kind, getattr(record, attr), child_kind=spec.label, identifier=identifier)
        for attr, parent_kind in spec.parents
    }


def make_key_fn(
    spec: KindSpec,
    resolver: ReferenceResolver,
    properties: Mapping[tuple[str, str], str],
    label_index: Mapping[str, Mapping[str, EntityRecord]],
    *,
    strict: bool = True,
) -> Callable[[EntityRecord], Hashable | None]:
    """Natural key of an imported record, with parent references made live.

    Returns ``None`` when a parent is pending creation. In non-strict mode an
    unresolvable reference also yields ``None`` instead of raising.
    """

    def key_fn(record: EntityRecord) -> Hashable | None:
        identifier = spec.identify(record, label_index)
        try:
            parents = resolved_parents(spec, record, resolver, properties, identifier)
        except PendingParent:
            return None
        except RecordResolutionError:
            if strict:
                raise
            return None
        if not parents:
            return spec.natural_key(record)
        return spec.natural_key(dataclasses.replace(record, **parents))

    return key_fn


def build_warnings(kinds: tuple[KindPreview, ...]) -> tuple[str, ...]:
    total_creates = sum(len(item.creates) for item in kinds)
    total_updates = sum(len(item.updates) for item in kinds)
    by_kind = {item.kind: item for item in kinds}
    warnings: list[str] = []
    if total_creates > 0 or total_updates > 0:
        warnings.append(
            f"This import will create {total_creates} new records and update {total_updates} existing records."
        )
    tenant_creates = len(by_kind[TENANTS].creates) if TENANTS in by_kind else 0
    if tenant_creates > 0:
        warnings.append(f"{tenant_creates} new tenant(s) will be created without login credentials.")
    invoice_updates = len(by_kind[INVOICES].updates) if INVOICES in by_kind else 0
    if invoice_updates > 0:
        warnings.append(f"{invoice_updates} invoice(s) will be modified. Review payment status changes carefully.")
    warnings.append("Make sure you have a backup before proceeding with the import.")
    return tuple(warnings)


def build_preview(current_state: Mapping[str, list[EntityRecord]], snapshot: ImportSnapshot) -> ChangePreview:
    """Classify every imported record as create, update or unchanged.

    ``current_state`` maps each kind name (plus ``properties``) to its live
    records. Raises ``RecordResolutionError`` when a parent reference is
    neither live, remapped nor created by this snapshot.
    """
    live_ids = {name: [record.id for record in records] for name, records in current_state.items()}
    resolver = ReferenceResolver(live_ids)
    properties = property_index(list(current_state.get(PROPERTIES, [])))
    label_index = snapshot.index()

    previews: list[KindPreview] = []
    for spec in KIND_ORDER:
        imported = snapshot.records(spec.name)
        key_fn = make_key_fn(spec, resolver, properties, label_index)
        result = match(current_state.get(spec.name, []), imported, key_fn, spec.natural_key)

        updates: list[ChangeEntry] = []
        unchanged = 0
        for live, record in result.matched_pairs:
            resolver.register(spec.name, record.id, live.id)
            changed = diff(live, record, spec.compare_fields)
            if not changed:
                unchanged += 1
                continue
            updates.append(
                ChangeEntry(
                    action=UPDATE,
                    identifier=spec.identify(record, label_index),
                    target_id=live.id,
                    before=MappingProxyType(pick(live, changed)),
                    after=MappingProxyType(pick(record, changed)),
                    changed_fields=tuple(changed),
                )
            )

        creates: list[ChangeEntry] = []
        for position, record in enumerate(result.creates):
            resolver.mark_pending(spec.name, record.id)
            creates.append(
                ChangeEntry(
                    action=CREATE,
                    identifier=spec.identify(record, label_index),
                    after=MappingProxyType(record.to_dict()),
                    index=position,
                )
            )

        logger.debug(
            "Preview %s: %s creates, %s updates, %s unchanged",
            spec.name,
            len(creates),
            len(updates),
            unchanged,
        )
        previews.append(
            KindPreview(kind=spec.name, creates=tuple(creates), updates=tuple(updates), unchanged_count=unchanged)
        )

    kinds = tuple(previews)
    return ChangePreview(kinds=kinds, warnings=build_warnings(kinds))
