from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Mapping

DEFAULT_SCHEMA_VERSION = "1.0.0"
SOURCE_GARBAGE_SCHEDULE = "GARBAGE_SCHEDULE"
SOURCE_TENANT_MOVE = "TENANT_MOVE"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def to_utc_date(value: datetime | date) -> date:
    if isinstance(value, datetime):
        return _ensure_tz(value).astimezone(timezone.utc).date()
    return value


def schema_major(version: str) -> str:
    return str(version or "").strip().split(".")[0]


@dataclass
class ImportConfig:
    schema_version: str = DEFAULT_SCHEMA_VERSION
    token_ttl_minutes: int = 15
    transaction_timeout_seconds: int = 30
    token_backend: str = "memory"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ImportConfig":
        data = data or {}
        backend = str(data.get("token_backend", "memory")).strip().lower()
        if backend not in {"memory", "sqlite"}:
            backend = "memory"
        return cls(
            schema_version=str(data.get("schema_version", DEFAULT_SCHEMA_VERSION)).strip()
            or DEFAULT_SCHEMA_VERSION,
            token_ttl_minutes=max(1, int(data.get("token_ttl_minutes", 15))),
            transaction_timeout_seconds=max(1, int(data.get("transaction_timeout_seconds", 30))),
            token_backend=backend,
        )


@dataclass
class CalendarConfig:
    window_days: int = 90
    recent_move_in_days: int = 7
    calendar_name: str = "Building Calendar"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarConfig":
        data = data or {}
        return cls(
            window_days=max(1, int(data.get("window_days", 90))),
            recent_move_in_days=max(0, int(data.get("recent_move_in_days", 7))),
            calendar_name=str(data.get("calendar_name", "Building Calendar")).strip() or "Building Calendar",
        )


@dataclass
class MaintenanceConfig:
    sweep_interval_seconds: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MaintenanceConfig":
        data = data or {}
        return cls(sweep_interval_seconds=max(5, int(data.get("sweep_interval_seconds", 60))))


@dataclass
class AppConfig:
    imports: ImportConfig = field(default_factory=ImportConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            imports=ImportConfig.from_dict(data.get("imports")),
            calendar=CalendarConfig.from_dict(data.get("calendar")),
            maintenance=MaintenanceConfig.from_dict(data.get("maintenance")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarEvent:
    title: str
    event_date: date
    source_type: str
    source_id: str
    description: str = ""
    all_day: bool = True
    category: str = "logistics"
    building_name: str = ""
    unit_id: str | None = None
    created_by_id: str = ""
    is_visible_to_tenant: bool = True
    id: str = ""
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "eventDate": self.event_date.isoformat(),
            "allDay": self.all_day,
            "category": self.category,
            "buildingName": self.building_name,
            "unitId": self.unit_id,
            "createdById": self.created_by_id,
            "isVisibleToTenant": self.is_visible_to_tenant,
            "sourceType": self.source_type,
            "sourceId": self.source_id,
            "createdAt": serialize_datetime(self.created_at),
        }

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "event_date": self.event_date.isoformat(),
            "all_day": int(self.all_day),
            "category": self.category,
            "building_name": self.building_name,
            "unit_id": self.unit_id,
            "created_by_id": self.created_by_id,
            "is_visible_to_tenant": int(self.is_visible_to_tenant),
            "source_type": self.source_type,
            "source_id": self.source_id,
            "created_at": serialize_datetime(self.created_at),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CalendarEvent":
        return cls(
            id=str(row["id"]),
            title=str(row["title"]),
            description=str(row["description"] or ""),
            event_date=date.fromisoformat(str(row["event_date"])),
            all_day=bool(row["all_day"]),
            category=str(row["category"] or ""),
            building_name=str(row["building_name"] or ""),
            unit_id=row["unit_id"],
            created_by_id=str(row["created_by_id"] or ""),
            is_visible_to_tenant=bool(row["is_visible_to_tenant"]),
            source_type=str(row["source_type"]),
            source_id=str(row["source_id"]),
            created_at=parse_iso_datetime(row["created_at"]),
        )

    @property
    def source_key(self) -> str:
        return f"{self.source_type}:{self.source_id}"


@dataclass
class CalendarSyncResult:
    success: bool
    admin_events_created: int = 0
    admin_events_deleted: int = 0
    tenants_affected: int = 0
    errors: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "adminEventsCreated": self.admin_events_created,
            "adminEventsDeleted": self.admin_events_deleted,
            "tenantsAffected": self.tenants_affected,
            "errors": list(self.errors),
            "timestamp": serialize_datetime(self.timestamp),
        }


@dataclass
class MoveEventSyncResult:
    success: bool
    event_id: str | None = None
    action: str = "none"
    error: str | None = None
    events_created: int = 0
    events_deleted: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "eventId": self.event_id,
            "action": self.action,
            "eventsCreated": self.events_created,
            "eventsDeleted": self.events_deleted,
        }
        if self.error:
            payload["error"] = self.error
        return payload


def sync_window(now: datetime, window_days: int) -> tuple[date, date]:
    start = to_utc_date(now)
    return start, start + timedelta(days=max(1, window_days))
