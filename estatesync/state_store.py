from __future__ import annotations

import dataclasses
import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, TypeVar

from estatesync.kinds import INSPECTIONS, KIND_ORDER, PROPERTIES, UNITS
from estatesync.models import CalendarEvent, parse_iso_datetime, utc_now
from estatesync.records import (
    EntityRecord,
    InspectionItemRecord,
    InspectionPhotoRecord,
    PropertyRecord,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=EntityRecord)

_PROGRESS_STEPS = 1000

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS properties (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    address TEXT NOT NULL DEFAULT '',
    city TEXT NOT NULL DEFAULT '',
    province TEXT NOT NULL DEFAULT '',
    postal_code TEXT NOT NULL DEFAULT '',
    hero_image_url TEXT,
    marketing_copy_overview TEXT,
    marketing_copy_neighborhood TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS building_infos (
    id TEXT PRIMARY KEY,
    building_name TEXT NOT NULL UNIQUE,
    parking_rules TEXT,
    garbage_schedule TEXT,
    garbage_schedule_structured TEXT,
    quiet_hours TEXT,
    emergency_contacts TEXT,
    custom_notes TEXT,
    updated_at TEXT,
    updated_by_id TEXT
);

CREATE TABLE IF NOT EXISTS units (
    id TEXT PRIMARY KEY,
    unit_label TEXT NOT NULL,
    property_id TEXT NOT NULL REFERENCES properties(id),
    building_name TEXT NOT NULL DEFAULT '',
    rent_amount_cents INTEGER,
    rent_due_day INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'VACANT',
    description TEXT,
    bedrooms INTEGER,
    bathrooms REAL,
    sqft INTEGER,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE (property_id, building_name, unit_label)
);

CREATE TABLE IF NOT EXISTS tenants (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL DEFAULT '',
    phone TEXT,
    role TEXT NOT NULL DEFAULT 'TENANT',
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    insurance_status TEXT,
    insurance_provider TEXT,
    insurance_expires_at TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS tenancies (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES tenants(id),
    unit_id TEXT NOT NULL REFERENCES units(id),
    start_date TEXT NOT NULL,
    end_date TEXT,
    move_out_date TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    role_in_unit TEXT NOT NULL DEFAULT 'PRIMARY',
    is_legacy_move_in INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    unit_id TEXT NOT NULL REFERENCES units(id),
    tenancy_id TEXT NOT NULL REFERENCES tenancies(id),
    period_month TEXT NOT NULL,
    due_date TEXT,
    amount_cents INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'OPEN',
    invoice_type TEXT NOT NULL DEFAULT 'RENT',
    charge_category TEXT,
    description TEXT,
    stripe_checkout_session_id TEXT,
    stripe_payment_intent_id TEXT,
    etransfer_marked_at TEXT,
    etransfer_marked_by_id TEXT,
    etransfer_reject_reason TEXT,
    etransfer_status TEXT,
    payment_method TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS checklist_items (
    id TEXT PRIMARY KEY,
    tenancy_id TEXT NOT NULL REFERENCES tenancies(id),
    item_type TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    description TEXT,
    is_required INTEGER NOT NULL DEFAULT 1,
    is_completed INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT,
    completed_by_id TEXT,
    sort_order INTEGER NOT NULL DEFAULT 0,
    checklist_type TEXT NOT NULL DEFAULT 'MOVE_IN',
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS inspections (
    id TEXT PRIMARY KEY,
    tenancy_id TEXT NOT NULL REFERENCES tenancies(id),
    inspection_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'NOT_STARTED',
    is_finalized INTEGER NOT NULL DEFAULT 0,
    finalized_at TEXT,
    finalized_by_id TEXT,
    notes TEXT,
    damage_notes TEXT,
    damage_found INTEGER NOT NULL DEFAULT 0,
    keys_returned INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS inspection_items (
    id TEXT PRIMARY KEY,
    inspection_id TEXT NOT NULL REFERENCES inspections(id) ON DELETE CASCADE,
    category TEXT NOT NULL DEFAULT '',
    condition TEXT,
    notes TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS inspection_photos (
    id TEXT PRIMARY KEY,
    inspection_item_id TEXT NOT NULL REFERENCES inspection_items(id) ON DELETE CASCADE,
    storage_key TEXT NOT NULL DEFAULT '',
    filename TEXT NOT NULL DEFAULT '',
    caption TEXT,
    mime_type TEXT NOT NULL DEFAULT '',
    size_bytes INTEGER NOT NULL DEFAULT 0,
    uploaded_at TEXT
);

CREATE TABLE IF NOT EXISTS calendar_events (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    event_date TEXT NOT NULL,
    all_day INTEGER NOT NULL DEFAULT 1,
    category TEXT NOT NULL DEFAULT 'logistics',
    building_name TEXT NOT NULL DEFAULT '',
    unit_id TEXT,
    created_by_id TEXT NOT NULL DEFAULT '',
    is_visible_to_tenant INTEGER NOT NULL DEFAULT 1,
    source_type TEXT NOT NULL,
    source_id TEXT NOT NULL,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_calendar_events_source ON calendar_events(source_type, source_id);
CREATE INDEX IF NOT EXISTS idx_calendar_events_building ON calendar_events(building_name, event_date);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_at TEXT NOT NULL,
    trigger TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    duration_ms INTEGER NOT NULL,
    events_created INTEGER NOT NULL,
    events_deleted INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    created_at TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    action TEXT NOT NULL,
    entity TEXT NOT NULL,
    details_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS confirmation_tokens (
    token TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _utc_text(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _utc_text(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def _new_id() -> str:
    return uuid.uuid4().hex


class StoreTransaction:
    """Record access bound to one open SQLite transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def fetch_all(self, record_cls: type[R]) -> list[R]:
        columns = ", ".join(record_cls.columns())
        rows = self.conn.execute(f"SELECT {columns} FROM {record_cls.TABLE} ORDER BY rowid").fetchall()
        return [record_cls.from_row(row) for row in rows]

    def find_first(self, record_cls: type[R], **criteria: Any) -> R | None:
        columns = ", ".join(record_cls.columns())
        where = " AND ".join(f"{name} = ?" for name in criteria) or "1 = 1"
        row = self.conn.execute(
            f"SELECT {columns} FROM {record_cls.TABLE} WHERE {where} ORDER BY rowid LIMIT 1",
            tuple(_db_value(value) for value in criteria.values()),
        ).fetchone()
        return record_cls.from_row(row) if row is not None else None

    def get(self, record_cls: type[R], record_id: str) -> R | None:
        return self.find_first(record_cls, id=record_id)

    def exists(self, record_cls: type[EntityRecord], record_id: str) -> bool:
        if not record_id:
            return False
        row = self.conn.execute(f"SELECT 1 FROM {record_cls.TABLE} WHERE id = ?", (record_id,)).fetchone()
        return row is not None

    def insert(self, record: R) -> R:
        columns = record.columns()
        now = utc_now()
        changes: dict[str, Any] = {}
        if not record.id:
            changes["id"] = _new_id()
        for name in ("created_at", "updated_at"):
            if name in columns and getattr(record, name) is None:
                changes[name] = now
        if changes:
            record = dataclasses.replace(record, **changes)
        row = record.to_row()
        names = list(row)
        self.conn.execute(
            f"INSERT INTO {record.TABLE} ({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})",
            tuple(row[name] for name in names),
        )
        return record

    def update(self, record_cls: type[EntityRecord], record_id: str, values: dict[str, Any]) -> int:
        values = dict(values)
        if "updated_at" in record_cls.columns():
            values["updated_at"] = utc_now()
        if not values:
            return 0
        assignments = ", ".join(f"{name} = ?" for name in values)
        cursor = self.conn.execute(
            f"UPDATE {record_cls.TABLE} SET {assignments} WHERE id = ?",
            (*(_db_value(value) for value in values.values()), record_id),
        )
        return int(cursor.rowcount)

    def find_property(self, name: str, address: str) -> PropertyRecord | None:
        return self.find_first(PropertyRecord, name=name, address=address)

    def _items_by_inspection(self, inspection_ids: Iterable[str] | None = None) -> dict[str, list[InspectionItemRecord]]:
        items = self.fetch_all(InspectionItemRecord)
        photos = self.fetch_all(InspectionPhotoRecord)
        wanted = set(inspection_ids) if inspection_ids is not None else None
        photos_by_item: dict[str, list[InspectionPhotoRecord]] = {}
        for photo in photos:
            photos_by_item.setdefault(photo.inspection_item_id, []).append(photo)
        grouped: dict[str, list[InspectionItemRecord]] = {}
        for item in items:
            if wanted is not None and item.inspection_id not in wanted:
                continue
            item.photos = photos_by_item.get(item.id, [])
            grouped.setdefault(item.inspection_id, []).append(item)
        return grouped

    def inspection_items(self, inspection_id: str) -> list[InspectionItemRecord]:
        return self._items_by_inspection([inspection_id]).get(inspection_id, [])

    def replace_inspection_items(self, inspection_id: str, items: Iterable[InspectionItemRecord]) -> int:
        self.conn.execute(
            """
            DELETE FROM inspection_photos
            WHERE inspection_item_id IN (SELECT id FROM inspection_items WHERE inspection_id = ?)
            """,
            (inspection_id,),
        )
        self.conn.execute("DELETE FROM inspection_items WHERE inspection_id = ?", (inspection_id,))
        count = 0
        for item in items:
            stored = self.insert(
                dataclasses.replace(
                    item,
                    id="",
                    inspection_id=inspection_id,
                    photos=[],
                    created_at=item.created_at,
                    updated_at=None,
                )
            )
            for photo in item.photos:
                self.insert(dataclasses.replace(photo, id="", inspection_item_id=stored.id))
            count += 1
        return count

    def current_state(self) -> dict[str, list[EntityRecord]]:
        """Every live record, grouped by kind name, with nested blocks attached."""
        state: dict[str, list[EntityRecord]] = {PROPERTIES: self.fetch_all(PropertyRecord)}
        for spec in KIND_ORDER:
            state[spec.name] = self.fetch_all(spec.record_cls)
        properties = {item.id: item for item in state[PROPERTIES]}
        for unit in state[UNITS]:
            unit.property = properties.get(unit.property_id)
        items = self._items_by_inspection()
        for inspection in state[INSPECTIONS]:
            inspection.items = items.get(inspection.id, [])
        return state

    def delete_calendar_events(self, source_types: Iterable[str], source_id: str | None = None) -> int:
        types = list(source_types)
        if not types:
            return 0
        sql = f"DELETE FROM calendar_events WHERE source_type IN ({', '.join('?' for _ in types)})"
        params: list[Any] = list(types)
        if source_id is not None:
            sql += " AND source_id = ?"
            params.append(source_id)
        cursor = self.conn.execute(sql, params)
        return int(cursor.rowcount)

    def insert_calendar_events(self, events: Iterable[CalendarEvent]) -> list[CalendarEvent]:
        now = utc_now()
        stored = [
            dataclasses.replace(event, id=event.id or _new_id(), created_at=event.created_at or now)
            for event in events
        ]
        if not stored:
            return []
        rows = [event.to_row() for event in stored]
        names = list(rows[0])
        self.conn.executemany(
            f"INSERT INTO calendar_events ({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})",
            [tuple(row[name] for name in names) for row in rows],
        )
        return stored

    def calendar_events(
        self,
        *,
        source_type: str | None = None,
        source_id: str | None = None,
        building_name: str | None = None,
    ) -> list[CalendarEvent]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (("source_type", source_type), ("source_id", source_id), ("building_name", building_name)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT * FROM calendar_events {where} ORDER BY event_date, rowid",
            params,
        ).fetchall()
        return [CalendarEvent.from_row(row) for row in rows]

    def count_active_tenancies(self, building_name: str) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS total
            FROM tenancies t
            JOIN units u ON u.id = t.unit_id
            WHERE t.is_active = 1 AND u.building_name = ?
            """,
            (building_name,),
        ).fetchone()
        return int(row["total"])

    def move_out_tenancies(self) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT t.id AS tenancy_id, t.user_id, t.unit_id, t.start_date, t.move_out_date,
                   u.unit_label, u.building_name
            FROM tenancies t
            JOIN units u ON u.id = t.unit_id
            WHERE t.is_active = 1 AND t.move_out_date IS NOT NULL
            ORDER BY t.rowid
            """
        ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["start_date"] = parse_iso_datetime(item["start_date"])
            item["move_out_date"] = parse_iso_datetime(item["move_out_date"])
            output.append(item)
        return output

    def record_audit_event(
        self,
        *,
        action: str,
        details: dict[str, Any],
        actor_id: str = "",
        entity: str = "",
        run_id: int | None = None,
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO audit_events(run_id, created_at, actor_id, action, entity, details_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (run_id, _utc_now(), actor_id, action, entity, json.dumps(details, ensure_ascii=False, default=str)),
        )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.executescript(SCHEMA_SQL)

    @contextmanager
    def transaction(self, timeout_seconds: float | None = None) -> Iterator[StoreTransaction]:
        """Run a block inside ``BEGIN IMMEDIATE``, committing or rolling back as a unit.

        Past ``timeout_seconds`` the running statement is interrupted, which
        raises ``sqlite3.OperationalError`` and rolls everything back; a block that
        finishes past the deadline is rolled back the same way. Do not
        call other ``StateStore`` writers from inside the block.
        """
        with self._lock:
            conn = self._connect()
            conn.isolation_level = None
            deadline = None
            if timeout_seconds:
                deadline = time.monotonic() + float(timeout_seconds)
                conn.set_progress_handler(lambda: 1 if time.monotonic() > deadline else 0, _PROGRESS_STEPS)
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield StoreTransaction(conn)
                if deadline is not None and time.monotonic() > deadline:
                    raise sqlite3.OperationalError("interrupted")
                conn.execute("COMMIT")
            except BaseException:
                conn.set_progress_handler(None, 0)
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

    def current_state(self) -> dict[str, list[EntityRecord]]:
        with self.transaction() as tx:
            return tx.current_state()

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        events_created: int,
        events_deleted: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, events_created, events_deleted)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), trigger, status, message, duration_ms, events_created, events_deleted),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        return self.record_sync_run(
            trigger=trigger,
            status="running",
            message=message,
            duration_ms=0,
            events_created=0,
            events_deleted=0,
        )

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        events_created: int,
        events_deleted: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, events_created = ?, events_deleted = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(events_created),
                        int(events_deleted),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, events_created, events_deleted
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        action: str,
        details: dict[str, Any],
        actor_id: str = "",
        entity: str = "",
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                StoreTransaction(conn).record_audit_event(
                    action=action,
                    details=details,
                    actor_id=actor_id,
                    entity=entity,
                    run_id=run_id,
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, action: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if action is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, actor_id, action, entity, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, actor_id, action, entity, details_json
                        FROM audit_events
                        WHERE action = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(action), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    def put_token(self, token: str, value: str, expires_at: datetime) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO confirmation_tokens(token, value, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(token) DO UPDATE SET
                        value = excluded.value,
                        expires_at = excluded.expires_at
                    """,
                    (token, value, _utc_text(expires_at)),
                )
                conn.commit()

    def get_token(self, token: str) -> tuple[str, datetime] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT value, expires_at FROM confirmation_tokens WHERE token = ?",
                    (token,),
                ).fetchone()
        if row is None:
            return None
        expires_at = parse_iso_datetime(row["expires_at"])
        if expires_at is None:
            return None
        return str(row["value"]), expires_at

    def delete_token(self, token: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM confirmation_tokens WHERE token = ?", (token,))
                conn.commit()
                return cursor.rowcount > 0

    def sweep_tokens(self, now: datetime) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM confirmation_tokens WHERE expires_at < ?",
                    (_utc_text(now),),
                )
                conn.commit()
                return int(cursor.rowcount)
