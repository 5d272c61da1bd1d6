from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping

from estatesync.models import to_utc_date
from estatesync.records import (
    BuildingInfoRecord,
    ChecklistItemRecord,
    EntityRecord,
    InspectionRecord,
    InvoiceRecord,
    TenancyRecord,
    TenantRecord,
    UnitRecord,
)

BUILDING_INFOS = "buildingInfos"
UNITS = "units"
TENANTS = "tenants"
TENANCIES = "tenancies"
INVOICES = "invoices"
CHECKLIST_ITEMS = "checklistItems"
INSPECTIONS = "inspections"
PROPERTIES = "properties"

RecordIndex = Mapping[str, Mapping[str, EntityRecord]]


def _day(value: Any) -> str:
    if value is None:
        return ""
    return to_utc_date(value).isoformat()


def _label_building_info(record: BuildingInfoRecord, index: RecordIndex) -> str:
    return record.building_name


def _label_unit(record: UnitRecord, index: RecordIndex) -> str:
    return f"Unit {record.unit_label} - {record.building_name or 'No Building'}"


def _label_tenant(record: TenantRecord, index: RecordIndex) -> str:
    return f"{record.name} ({record.email})"


def _label_tenancy(record: TenancyRecord, index: RecordIndex) -> str:
    tenant = index.get(TENANTS, {}).get(record.user_id)
    unit = index.get(UNITS, {}).get(record.unit_id)
    tenant_name = getattr(tenant, "name", "") or "Unknown Tenant"
    unit_label = getattr(unit, "unit_label", "") or "Unknown Unit"
    return f"{tenant_name} at {unit_label} ({_day(record.start_date)})"


def _label_invoice(record: InvoiceRecord, index: RecordIndex) -> str:
    return f"Invoice {record.period_month} ({record.invoice_type or 'RENT'})"


def _label_checklist_item(record: ChecklistItemRecord, index: RecordIndex) -> str:
    return f"{record.title} ({record.checklist_type or 'MOVE_IN'})"


def _label_inspection(record: InspectionRecord, index: RecordIndex) -> str:
    tenancy = index.get(TENANCIES, {}).get(record.tenancy_id)
    tenant = index.get(TENANTS, {}).get(getattr(tenancy, "user_id", "")) if tenancy else None
    unit = index.get(UNITS, {}).get(getattr(tenancy, "unit_id", "")) if tenancy else None
    tenant_name = getattr(tenant, "name", "") or "Unknown"
    unit_label = getattr(unit, "unit_label", "") or "Unknown"
    return f"{record.inspection_type} Inspection - {tenant_name} at {unit_label}"


@dataclass(frozen=True)
class KindSpec:
    name: str
    label: str
    record_cls: type[EntityRecord]
    natural_key: Callable[[Any], tuple[Any, ...]]
    identify: Callable[[Any, RecordIndex], str]
    compare_fields: tuple[str, ...]
    write_fields: tuple[str, ...]
    parents: tuple[tuple[str, str], ...] = ()
    required_fields: tuple[str, ...] = ()
    error_field: str = "id"


BUILDING_INFO_SPEC = KindSpec(
    name=BUILDING_INFOS,
    label="BuildingInfo",
    record_cls=BuildingInfoRecord,
    natural_key=lambda r: (r.building_name,),
    identify=_label_building_info,
    compare_fields=(
        "parking_rules",
        "garbage_schedule",
        "garbage_schedule_structured",
        "quiet_hours",
        "emergency_contacts",
        "custom_notes",
    ),
    write_fields=(
        "parking_rules",
        "garbage_schedule",
        "garbage_schedule_structured",
        "quiet_hours",
        "emergency_contacts",
        "custom_notes",
    ),
    required_fields=("building_name",),
    error_field="building_name",
)

UNIT_SPEC = KindSpec(
    name=UNITS,
    label="Unit",
    record_cls=UnitRecord,
    natural_key=lambda r: (r.property_id, r.building_name or "", r.unit_label),
    identify=_label_unit,
    compare_fields=("rent_amount_cents", "rent_due_day", "status", "description", "bedrooms", "bathrooms", "sqft"),
    write_fields=("rent_amount_cents", "rent_due_day", "status", "description", "bedrooms", "bathrooms", "sqft"),
    required_fields=("unit_label",),
    error_field="unit_label",
)

TENANT_SPEC = KindSpec(
    name=TENANTS,
    label="Tenant",
    record_cls=TenantRecord,
    natural_key=lambda r: (r.email,),
    identify=_label_tenant,
    compare_fields=(
        "name",
        "phone",
        "status",
        "insurance_status",
        "insurance_provider",
        "insurance_expires_at",
    ),
    write_fields=(
        "name",
        "phone",
        "status",
        "insurance_status",
        "insurance_provider",
        "insurance_expires_at",
    ),
    required_fields=("email",),
    error_field="email",
)

TENANCY_SPEC = KindSpec(
    name=TENANCIES,
    label="Tenancy",
    record_cls=TenancyRecord,
    natural_key=lambda r: (r.user_id, r.unit_id, _day(r.start_date)),
    identify=_label_tenancy,
    compare_fields=("end_date", "move_out_date", "is_active", "role_in_unit", "is_legacy_move_in"),
    write_fields=("end_date", "move_out_date", "is_active", "role_in_unit", "is_legacy_move_in"),
    parents=(("user_id", TENANTS), ("unit_id", UNITS)),
    required_fields=("user_id", "unit_id", "start_date"),
)

INVOICE_SPEC = KindSpec(
    name=INVOICES,
    label="Invoice",
    record_cls=InvoiceRecord,
    natural_key=lambda r: (r.unit_id, r.tenancy_id, r.period_month, r.invoice_type or "RENT"),
    identify=_label_invoice,
    compare_fields=(
        "due_date",
        "amount_cents",
        "status",
        "charge_category",
        "description",
        "payment_method",
        "etransfer_status",
    ),
    write_fields=(
        "period_month",
        "due_date",
        "amount_cents",
        "status",
        "invoice_type",
        "charge_category",
        "description",
        "stripe_checkout_session_id",
        "stripe_payment_intent_id",
        "etransfer_marked_at",
        "etransfer_marked_by_id",
        "etransfer_reject_reason",
        "etransfer_status",
        "payment_method",
    ),
    parents=(("unit_id", UNITS), ("tenancy_id", TENANCIES)),
    required_fields=("unit_id", "tenancy_id", "period_month"),
    error_field="period_month",
)

CHECKLIST_ITEM_SPEC = KindSpec(
    name=CHECKLIST_ITEMS,
    label="ChecklistItem",
    record_cls=ChecklistItemRecord,
    natural_key=lambda r: (r.tenancy_id, r.item_type, r.checklist_type or "MOVE_IN"),
    identify=_label_checklist_item,
    compare_fields=("title", "description", "is_required", "is_completed", "completed_at", "sort_order"),
    write_fields=(
        "item_type",
        "title",
        "description",
        "is_required",
        "is_completed",
        "completed_at",
        "completed_by_id",
        "sort_order",
        "checklist_type",
    ),
    parents=(("tenancy_id", TENANCIES),),
    required_fields=("tenancy_id", "item_type"),
    error_field="title",
)

INSPECTION_SPEC = KindSpec(
    name=INSPECTIONS,
    label="Inspection",
    record_cls=InspectionRecord,
    natural_key=lambda r: (r.tenancy_id, r.inspection_type),
    identify=_label_inspection,
    compare_fields=("status", "is_finalized", "notes", "damage_notes", "damage_found", "keys_returned"),
    write_fields=(
        "status",
        "is_finalized",
        "finalized_at",
        "finalized_by_id",
        "notes",
        "damage_notes",
        "damage_found",
        "keys_returned",
    ),
    parents=(("tenancy_id", TENANCIES),),
    required_fields=("tenancy_id", "inspection_type"),
    error_field="inspection_type",
)

# Parents strictly before children: a child's natural key embeds resolved parent ids.
KIND_ORDER: tuple[KindSpec, ...] = (
    BUILDING_INFO_SPEC,
    UNIT_SPEC,
    TENANT_SPEC,
    TENANCY_SPEC,
    INVOICE_SPEC,
    CHECKLIST_ITEM_SPEC,
    INSPECTION_SPEC,
)
KIND_NAMES: tuple[str, ...] = tuple(spec.name for spec in KIND_ORDER)
SPECS_BY_NAME: dict[str, KindSpec] = {spec.name: spec for spec in KIND_ORDER}


def get_spec(name: str) -> KindSpec:
    try:
        return SPECS_BY_NAME[name]
    except KeyError as exc:
        raise KeyError(f"Unknown entity kind: {name}") from exc
