from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable

from estatesync.models import (
    SOURCE_GARBAGE_SCHEDULE,
    SOURCE_TENANT_MOVE,
    CalendarEvent,
    CalendarSyncResult,
    MoveEventSyncResult,
    parse_iso_datetime,
    sync_window,
    to_utc_date,
    utc_now,
)
from estatesync.records import BuildingInfoRecord
from estatesync.recurrence import RecurrenceRule, expand_occurrences, parse_schedule
from estatesync.state_store import StateStore

logger = logging.getLogger(__name__)

MOVE_IN_PREFIX = "Move-In:"
MOVE_OUT_PREFIX = "Move-Out:"


@dataclass(frozen=True)
class EventTemplate:
    building_name: str
    created_by_id: str = ""
    category: str = "logistics"
    unit_id: str | None = None
    is_visible_to_tenant: bool = True

    def build(self, rule: RecurrenceRule, weekday: int, day: date, source_type: str, source_id: str) -> CalendarEvent:
        return CalendarEvent(
            title=f"{rule.label} - {self.building_name}",
            description=rule.describe(self.building_name, weekday),
            event_date=day,
            source_type=source_type,
            source_id=source_id,
            category=self.category,
            building_name=self.building_name,
            unit_id=self.unit_id,
            created_by_id=self.created_by_id,
            is_visible_to_tenant=self.is_visible_to_tenant,
        )


@dataclass(frozen=True)
class SyncOutcome:
    created: int
    deleted: int
    affected: int


class CalendarSyncService:
    """Keeps derived calendar events consistent with their source records.

    Every sync deletes all events for a ``(source_type, source_id)`` key and
    regenerates them in the same transaction, so repeated syncs converge.
    """

    def __init__(
        self,
        state_store: StateStore,
        *,
        window_days: int = 90,
        recent_move_in_days: int = 7,
        transaction_timeout_seconds: float = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.window_days = window_days
        self.recent_move_in_days = recent_move_in_days
        self.transaction_timeout_seconds = transaction_timeout_seconds
        self._clock = clock

    def sync(
        self,
        source_type: str,
        source_id: str,
        rules: Iterable[RecurrenceRule] | None,
        template: EventTemplate,
    ) -> SyncOutcome:
        start, end = sync_window(self._clock(), self.window_days)
        with self.state_store.transaction(self.transaction_timeout_seconds) as tx:
            deleted = tx.delete_calendar_events([source_type], source_id)
            affected = tx.count_active_tenancies(template.building_name)
            if rules is None:
                return SyncOutcome(created=0, deleted=deleted, affected=affected)
            events = [
                template.build(rule, weekday, day, source_type, source_id)
                for rule in rules
                for weekday, day in expand_occurrences(rule, start, end)
            ]
            tx.insert_calendar_events(events)
        return SyncOutcome(created=len(events), deleted=deleted, affected=affected)

    def _sync_building(
        self,
        building_id: str,
        building_name: str,
        structured: str | None,
        free_text: str | None,
        actor_id: str,
    ) -> CalendarSyncResult:
        try:
            source = parse_schedule(structured, free_text)
            outcome = self.sync(
                SOURCE_GARBAGE_SCHEDULE,
                building_id,
                source.rules() if source is not None else None,
                EventTemplate(building_name=building_name, created_by_id=actor_id),
            )
        except Exception as exc:
            logger.exception("Error syncing building %s", building_name)
            return CalendarSyncResult(success=False, errors=[str(exc) or exc.__class__.__name__])
        logger.info(
            "Building %s: deleted %s old events, created %s new events, affecting %s tenants",
            building_name,
            outcome.deleted,
            outcome.created,
            outcome.affected,
        )
        return CalendarSyncResult(
            success=True,
            admin_events_created=outcome.created,
            admin_events_deleted=outcome.deleted,
            tenants_affected=outcome.affected,
        )

    def sync_building_schedule(
        self,
        building_id: str,
        building_name: str,
        schedule_data: str | None,
        actor_id: str = "",
        *,
        free_text: str | None = None,
    ) -> CalendarSyncResult:
        """Replace the building's schedule events. ``None`` for both sources clears them."""
        started = time.monotonic()
        run_id = self.state_store.start_sync_run(trigger="building", message=building_name)
        result = self._sync_building(building_id, building_name, schedule_data, free_text, actor_id)
        self._finish_run(run_id, started, result)
        return result

    def _move_events(
        self,
        tenancy_id: str,
        unit_id: str,
        building_name: str,
        unit_label: str,
        move_in: datetime | date | str | None,
        move_out: datetime | date | str | None,
        actor_id: str,
    ) -> list[CalendarEvent]:
        events: list[CalendarEvent] = []
        common: dict[str, Any] = {
            "source_type": SOURCE_TENANT_MOVE,
            "source_id": tenancy_id,
            "category": "move",
            "building_name": building_name,
            "unit_id": unit_id,
            "created_by_id": actor_id,
        }
        move_out_at = parse_iso_datetime(move_out)
        if move_out_at is not None:
            events.append(
                CalendarEvent(
                    title=f"{MOVE_OUT_PREFIX} {unit_label}",
                    description=f"Scheduled move-out for unit {unit_label} in {building_name}",
                    event_date=to_utc_date(move_out_at),
                    **common,
                )
            )
        move_in_at = parse_iso_datetime(move_in)
        cutoff = self._clock() - timedelta(days=self.recent_move_in_days)
        if move_in_at is not None and move_in_at >= cutoff:
            events.append(
                CalendarEvent(
                    title=f"{MOVE_IN_PREFIX} {unit_label}",
                    description=f"Scheduled move-in for unit {unit_label} in {building_name}",
                    event_date=to_utc_date(move_in_at),
                    **common,
                )
            )
        return events

    def _sync_move(
        self,
        tenancy_id: str,
        unit_id: str,
        building_name: str,
        unit_label: str,
        move_in: datetime | date | str | None,
        move_out: datetime | date | str | None,
        actor_id: str,
    ) -> MoveEventSyncResult:
        try:
            events = self._move_events(tenancy_id, unit_id, building_name, unit_label, move_in, move_out, actor_id)
            with self.state_store.transaction(self.transaction_timeout_seconds) as tx:
                deleted = tx.delete_calendar_events([SOURCE_TENANT_MOVE], tenancy_id)
                stored = tx.insert_calendar_events(events)
        except Exception as exc:
            logger.exception("Error syncing move events for tenancy %s", tenancy_id)
            return MoveEventSyncResult(success=False, error=str(exc) or exc.__class__.__name__)

        if stored:
            action = "updated" if deleted > 0 else "created"
        elif deleted > 0:
            action = "deleted"
        else:
            action = "none"
        logger.info("Move events for tenancy %s: %s created, %s deleted", tenancy_id, len(stored), deleted)
        return MoveEventSyncResult(
            success=True,
            event_id=stored[0].id if stored else None,
            action=action,
            events_created=len(stored),
            events_deleted=deleted,
        )

    def sync_tenant_move_events(
        self,
        tenancy_id: str,
        unit_id: str,
        building_name: str,
        unit_label: str,
        move_in: datetime | date | str | None,
        move_out: datetime | date | str | None,
        actor_id: str = "",
    ) -> MoveEventSyncResult:
        started = time.monotonic()
        run_id = self.state_store.start_sync_run(trigger="tenant_move", message=tenancy_id)
        result = self._sync_move(tenancy_id, unit_id, building_name, unit_label, move_in, move_out, actor_id)
        self.state_store.finish_sync_run(
            run_id=run_id,
            status="success" if result.success else "failed",
            message=result.error or result.action,
            duration_ms=int((time.monotonic() - started) * 1000),
            events_created=result.events_created,
            events_deleted=result.events_deleted,
        )
        return result

    def perform_full_sync(self, actor_id: str = "") -> CalendarSyncResult:
        """Rebuild every derived event from current buildings and tenancies."""
        started = time.monotonic()
        run_id = self.state_store.start_sync_run(trigger="full", message="full calendar sync")
        errors: list[str] = []
        created = 0
        deleted = 0
        affected = 0
        try:
            with self.state_store.transaction(self.transaction_timeout_seconds) as tx:
                deleted = tx.delete_calendar_events([SOURCE_GARBAGE_SCHEDULE, SOURCE_TENANT_MOVE])
                buildings = tx.fetch_all(BuildingInfoRecord)
                tenancies = tx.move_out_tenancies()
            logger.info("Full sync: deleted %s auto-generated events", deleted)

            for building in buildings:
                result = self._sync_building(
                    building.id,
                    building.building_name,
                    building.garbage_schedule_structured,
                    building.garbage_schedule,
                    actor_id,
                )
                if result.success:
                    created += result.admin_events_created
                    affected += result.tenants_affected
                else:
                    errors.append(f"Building {building.building_name}: {', '.join(result.errors)}")

            for tenancy in tenancies:
                move = self._sync_move(
                    tenancy["tenancy_id"],
                    tenancy["unit_id"],
                    tenancy["building_name"],
                    tenancy["unit_label"],
                    tenancy["start_date"],
                    tenancy["move_out_date"],
                    actor_id,
                )
                if move.success:
                    created += move.events_created
                elif move.error:
                    errors.append(f"Tenancy {tenancy['tenancy_id']}: {move.error}")
        except Exception as exc:
            logger.exception("Full calendar sync failed")
            errors.append(str(exc) or exc.__class__.__name__)

        result = CalendarSyncResult(
            success=not errors,
            admin_events_created=created,
            admin_events_deleted=deleted,
            tenants_affected=affected,
            errors=errors,
        )
        logger.info(
            "Full sync complete: %s events created, %s deleted, %s tenants affected",
            created,
            deleted,
            affected,
        )
        self._finish_run(run_id, started, result)
        return result

    def _finish_run(self, run_id: int, started: float, result: CalendarSyncResult) -> None:
        self.state_store.finish_sync_run(
            run_id=run_id,
            status="success" if result.success else "failed",
            message="; ".join(result.errors) if result.errors else "ok",
            duration_ms=int((time.monotonic() - started) * 1000),
            events_created=result.admin_events_created,
            events_deleted=result.admin_events_deleted,
        )

    def validate_sync_prerequisites(self, building_name: str) -> dict[str, Any]:
        with self.state_store.transaction() as tx:
            building = tx.find_first(BuildingInfoRecord, building_name=building_name)
        if building is None:
            return {"valid": False, "error": "Building info must be saved before syncing to calendars"}
        return {
            "valid": True,
            "buildingInfo": {
                "id": building.id,
                "buildingName": building.building_name,
                "garbageSchedule": building.garbage_schedule,
                "garbageScheduleStructured": building.garbage_schedule_structured,
            },
        }

    def building_sync_status(self, building_name: str) -> dict[str, Any]:
        with self.state_store.transaction() as tx:
            building = tx.find_first(BuildingInfoRecord, building_name=building_name)
            events = tx.calendar_events(source_type=SOURCE_GARBAGE_SCHEDULE, building_name=building_name)
            tenants = tx.count_active_tenancies(building_name)
        last_date = max((event.event_date for event in events), default=None)
        has_schedule = building is not None and bool(
            building.garbage_schedule_structured or building.garbage_schedule
        )
        return {
            "hasSchedule": has_schedule,
            "eventCount": len(events),
            "lastEventDate": last_date.isoformat() if last_date else None,
            "tenantsInBuilding": tenants,
        }

    def tenancy_move_event_status(self, tenancy_id: str) -> dict[str, Any]:
        with self.state_store.transaction() as tx:
            events = tx.calendar_events(source_type=SOURCE_TENANT_MOVE, source_id=tenancy_id)
        move_in = next((event for event in events if event.title.startswith(MOVE_IN_PREFIX)), None)
        move_out = next((event for event in events if event.title.startswith(MOVE_OUT_PREFIX)), None)
        return {
            "hasMoveInEvent": move_in is not None,
            "hasMoveOutEvent": move_out is not None,
            "moveInEventId": move_in.id if move_in else None,
            "moveOutEventId": move_out.id if move_out else None,
        }

    def building_events(self, building_name: str) -> list[CalendarEvent]:
        with self.state_store.transaction() as tx:
            return tx.calendar_events(building_name=building_name)

