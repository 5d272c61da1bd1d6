import json
from datetime import datetime, timezone
from typing import Any

from estatesync.records import BuildingInfoRecord, PropertyRecord, TenancyRecord, TenantRecord, UnitRecord
from estatesync.state_store import StateStore

SECTIONS = ("buildingInfos", "units", "tenants", "tenancies", "invoices", "checklistItems", "inspections")


def snapshot_document(schema_version: str = "1.0.0", **sections: list[dict[str, Any]]) -> dict[str, Any]:
    data = {name: list(sections.get(name, [])) for name in SECTIONS}
    return {
        "schemaVersion": schema_version,
        "exportedAt": "2024-01-01T00:00:00Z",
        "recordCounts": {name: len(records) for name, records in data.items()},
        "data": data,
    }


def snapshot_text(schema_version: str = "1.0.0", **sections: list[dict[str, Any]]) -> str:
    return json.dumps(snapshot_document(schema_version, **sections))


def property_payload() -> dict[str, Any]:
    return {"id": "prop-old", "name": "Maple Court", "address": "1 Maple St", "city": "Toronto"}


def unit_payload(unit_id: str = "unit-old", label: str = "101", rent: int = 150000) -> dict[str, Any]:
    return {
        "id": unit_id,
        "unitLabel": label,
        "propertyId": "prop-old",
        "buildingName": "Maple Court",
        "rentAmountCents": rent,
        "status": "OCCUPIED",
        "property": property_payload(),
    }


def tenant_payload(tenant_id: str = "tenant-old", email: str = "ann@example.com", name: str = "Ann") -> dict[str, Any]:
    return {"id": tenant_id, "email": email, "name": name, "role": "TENANT", "status": "ACTIVE"}


def tenancy_payload(
    tenancy_id: str = "tenancy-old",
    user_id: str = "tenant-old",
    unit_id: str = "unit-old",
    move_out: str | None = None,
) -> dict[str, Any]:
    return {
        "id": tenancy_id,
        "userId": user_id,
        "unitId": unit_id,
        "startDate": "2023-09-01T00:00:00Z",
        "moveOutDate": move_out,
        "isActive": True,
    }


def seed_building(store: StateStore, schedule: str | None = None, free_text: str | None = None) -> dict[str, str]:
    """Live property, building, unit, tenant and active tenancy for 'Maple Court'."""
    with store.transaction() as tx:
        prop = tx.insert(PropertyRecord(name="Maple Court", address="1 Maple St", city="Toronto"))
        building = tx.insert(
            BuildingInfoRecord(
                id="",
                building_name="Maple Court",
                garbage_schedule=free_text,
                garbage_schedule_structured=schedule,
            )
        )
        unit = tx.insert(
            UnitRecord(id="", unit_label="101", property_id=prop.id, building_name="Maple Court", status="OCCUPIED")
        )
        tenant = tx.insert(TenantRecord(id="", email="ann@example.com", name="Ann"))
        tenancy = tx.insert(
            TenancyRecord(
                id="",
                user_id=tenant.id,
                unit_id=unit.id,
                start_date=datetime(2023, 9, 1, tzinfo=timezone.utc),
            )
        )
    return {
        "property": prop.id,
        "building": building.id,
        "unit": unit.id,
        "tenant": tenant.id,
        "tenancy": tenancy.id,
    }
