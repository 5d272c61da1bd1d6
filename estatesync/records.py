from __future__ import annotations

from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar, Mapping, TypeVar

from estatesync.models import parse_iso_datetime, serialize_datetime

METADATA_FIELDS = frozenset({"id", "created_at", "updated_at", "created_by_id", "updated_by_id"})

R = TypeVar("R", bound="EntityRecord")


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


class EntityRecord:
    TABLE: ClassVar[str] = ""
    DATETIME_FIELDS: ClassVar[tuple[str, ...]] = ()
    BOOL_FIELDS: ClassVar[tuple[str, ...]] = ()
    NESTED_FIELDS: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def columns(cls) -> list[str]:
        return [f.name for f in fields(cls) if f.name not in cls.NESTED_FIELDS]

    @classmethod
    def _coerce(cls, name: str, value: Any) -> Any:
        if value is None:
            return None
        if name in cls.DATETIME_FIELDS:
            return parse_iso_datetime(value)
        if name in cls.BOOL_FIELDS:
            return _as_bool(value)
        return value

    @classmethod
    def from_dict(cls: type[R], data: Mapping[str, Any] | None) -> R:
        data = data or {}
        values: dict[str, Any] = {}
        for name in cls.columns():
            key = to_camel(name)
            if key in data:
                values[name] = cls._coerce(name, data[key])
        record = cls(**values)
        record._load_nested(data)
        return record

    @classmethod
    def from_row(cls: type[R], row: Mapping[str, Any]) -> R:
        values = {name: cls._coerce(name, row[name]) for name in cls.columns()}
        return cls(**values)

    def _load_nested(self, data: Mapping[str, Any]) -> None:
        return None

    def _nested_dict(self) -> dict[str, Any]:
        return {}

    def to_row(self) -> dict[str, Any]:
        row: dict[str, Any] = {}
        for name in self.columns():
            value = getattr(self, name)
            if isinstance(value, datetime):
                value = serialize_datetime(value)
            elif isinstance(value, bool):
                value = int(value)
            row[name] = value
        return row

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for name in self.columns():
            value = getattr(self, name)
            if isinstance(value, datetime):
                value = serialize_datetime(value)
            payload[to_camel(name)] = value
        payload.update(self._nested_dict())
        return payload

    def filled_values(self, names: list[str] | tuple[str, ...]) -> dict[str, Any]:
        # Explicit nulls fall back to the column default, matching NOT NULL columns.
        defaults = {f.name: f.default for f in fields(self) if f.default is not MISSING}
        values: dict[str, Any] = {}
        for name in names:
            value = getattr(self, name)
            if value is None and defaults.get(name) is not None:
                value = defaults[name]
            values[name] = value
        return values


@dataclass
class PropertyRecord(EntityRecord):
    TABLE: ClassVar[str] = "properties"
    DATETIME_FIELDS: ClassVar[tuple[str, ...]] = ("created_at", "updated_at")

    id: str = ""
    name: str = ""
    address: str = ""
    city: str = ""
    province: str = ""
    postal_code: str = ""
    hero_image_url: str | None = None
    marketing_copy_overview: str | None = None
    marketing_copy_neighborhood: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class BuildingInfoRecord(EntityRecord):
    TABLE: ClassVar[str] = "building_infos"
    DATETIME_FIELDS: ClassVar[tuple[str, ...]] = ("updated_at",)

    id: str
    building_name: str
    parking_rules: str | None = None
    garbage_schedule: str | None = None
    garbage_schedule_structured: str | None = None
    quiet_hours: str | None = None
    emergency_contacts: str | None = None
    custom_notes: str | None = None
    updated_at: datetime | None = None
    updated_by_id: str | None = None


@dataclass
class UnitRecord(EntityRecord):
    TABLE: ClassVar[str] = "units"
    DATETIME_FIELDS: ClassVar[tuple[str, ...]] = ("created_at", "updated_at")
    NESTED_FIELDS: ClassVar[tuple[str, ...]] = ("property",)

    id: str
    unit_label: str
    property_id: str = ""
    building_name: str = ""
    rent_amount_cents: int | None = None
    rent_due_day: int = 1
    status: str = "VACANT"
    description: str | None = None
    bedrooms: int | None = None
    bathrooms: float | None = None
    sqft: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    property: PropertyRecord | None = None

    def _load_nested(self, data: Mapping[str, Any]) -> None:
        raw_property = data.get("property")
        if isinstance(raw_property, Mapping):
            self.property = PropertyRecord.from_dict(raw_property)

    def _nested_dict(self) -> dict[str, Any]:
        return {"property": self.property.to_dict() if self.property is not None else None}


@dataclass
class TenantRecord(EntityRecord):
    TABLE: ClassVar[str] = "tenants"
    DATETIME_FIELDS: ClassVar[tuple[str, ...]] = ("insurance_expires_at", "created_at", "updated_at")

    id: str
    email: str
    name: str = ""
    phone: str | None = None
    role: str = "TENANT"
    status: str = "ACTIVE"
    insurance_status: str | None = None
    insurance_provider: str | None = None
    insurance_expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TenancyRecord(EntityRecord):
    TABLE: ClassVar[str] = "tenancies"
    DATETIME_FIELDS: ClassVar[tuple[str, ...]] = (
        "start_date",
        "end_date",
        "move_out_date",
        "created_at",
        "updated_at",
    )
    BOOL_FIELDS: ClassVar[tuple[str, ...]] = ("is_active", "is_legacy_move_in")

    id: str
    user_id: str
    unit_id: str
    start_date: datetime
    end_date: datetime | None = None
    move_out_date: datetime | None = None
    is_active: bool = True
    role_in_unit: str = "PRIMARY"
    is_legacy_move_in: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class InvoiceRecord(EntityRecord):
    TABLE: ClassVar[str] = "invoices"
    DATETIME_FIELDS: ClassVar[tuple[str, ...]] = (
        "due_date",
        "etransfer_marked_at",
        "created_at",
        "updated_at",
    )

    id: str
    unit_id: str
    tenancy_id: str
    period_month: str
    due_date: datetime | None = None
    amount_cents: int = 0
    status: str = "OPEN"
    invoice_type: str = "RENT"
    charge_category: str | None = None
    description: str | None = None
    stripe_checkout_session_id: str | None = None
    stripe_payment_intent_id: str | None = None
    etransfer_marked_at: datetime | None = None
    etransfer_marked_by_id: str | None = None
    etransfer_reject_reason: str | None = None
    etransfer_status: str | None = None
    payment_method: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ChecklistItemRecord(EntityRecord):
    TABLE: ClassVar[str] = "checklist_items"
    DATETIME_FIELDS: ClassVar[tuple[str, ...]] = ("completed_at", "created_at", "updated_at")
    BOOL_FIELDS: ClassVar[tuple[str, ...]] = ("is_required", "is_completed")

    id: str
    tenancy_id: str
    item_type: str
    title: str = ""
    description: str | None = None
    is_required: bool = True
    is_completed: bool = False
    completed_at: datetime | None = None
    completed_by_id: str | None = None
    sort_order: int = 0
    checklist_type: str = "MOVE_IN"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class InspectionPhotoRecord(EntityRecord):
    TABLE: ClassVar[str] = "inspection_photos"
    DATETIME_FIELDS: ClassVar[tuple[str, ...]] = ("uploaded_at",)

    id: str = ""
    inspection_item_id: str = ""
    storage_key: str = ""
    filename: str = ""
    caption: str | None = None
    mime_type: str = ""
    size_bytes: int = 0
    uploaded_at: datetime | None = None


@dataclass
class InspectionItemRecord(EntityRecord):
    TABLE: ClassVar[str] = "inspection_items"
    DATETIME_FIELDS: ClassVar[tuple[str, ...]] = ("created_at", "updated_at")
    NESTED_FIELDS: ClassVar[tuple[str, ...]] = ("photos",)

    id: str = ""
    inspection_id: str = ""
    category: str = ""
    condition: str | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    photos: list[InspectionPhotoRecord] = field(default_factory=list)

    def _load_nested(self, data: Mapping[str, Any]) -> None:
        self.photos = [
            InspectionPhotoRecord.from_dict(item) for item in data.get("photos") or [] if isinstance(item, Mapping)
        ]

    def _nested_dict(self) -> dict[str, Any]:
        return {"photos": [photo.to_dict() for photo in self.photos]}


@dataclass
class InspectionRecord(EntityRecord):
    TABLE: ClassVar[str] = "inspections"
    DATETIME_FIELDS: ClassVar[tuple[str, ...]] = ("finalized_at", "created_at", "updated_at")
    BOOL_FIELDS: ClassVar[tuple[str, ...]] = ("is_finalized", "damage_found", "keys_returned")
    NESTED_FIELDS: ClassVar[tuple[str, ...]] = ("items",)

    id: str
    tenancy_id: str
    inspection_type: str
    status: str = "NOT_STARTED"
    is_finalized: bool = False
    finalized_at: datetime | None = None
    finalized_by_id: str | None = None
    notes: str | None = None
    damage_notes: str | None = None
    damage_found: bool = False
    keys_returned: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    items: list[InspectionItemRecord] = field(default_factory=list)

    def _load_nested(self, data: Mapping[str, Any]) -> None:
        self.items = [
            InspectionItemRecord.from_dict(item) for item in data.get("items") or [] if isinstance(item, Mapping)
        ]

    def _nested_dict(self) -> dict[str, Any]:
        return {"items": [item.to_dict() for item in self.items]}
