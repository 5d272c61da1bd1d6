from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from estatesync.calendar_feed import render_calendar
from estatesync.calendar_sync import CalendarSyncService
from estatesync.config_manager import ConfigManager
from estatesync.errors import EstateSyncError
from estatesync.importer import ImportService
from estatesync.records import BuildingInfoRecord
from estatesync.scheduler import MaintenanceScheduler
from estatesync.snapshot import export_snapshot
from estatesync.state_store import StateStore
from estatesync.token_store import build_token_store

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ConfigUpdateRequest(_CamelModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ExportRequest(_CamelModel):
    actor_id: str = Field(default="", alias="actorId")
    actor_name: str = Field(default="", alias="actorName")
    actor_email: str = Field(default="", alias="actorEmail")


class ImportValidateRequest(_CamelModel):
    content: str = Field(min_length=1)
    actor_id: str = Field(default="", alias="actorId")


class ImportConfirmRequest(_CamelModel):
    content: str = Field(min_length=1)
    confirmation_token: str = Field(alias="confirmationToken")
    approved_changes: dict[str, Any] | None = Field(default=None, alias="approvedChanges")
    actor_id: str = Field(default="", alias="actorId")


class BuildingSyncRequest(_CamelModel):
    building_name: str = Field(default="", alias="buildingName")
    schedule_data: str | None = Field(default=None, alias="scheduleData")
    actor_id: str = Field(default="", alias="actorId")


class FullSyncRequest(_CamelModel):
    actor_id: str = Field(default="", alias="actorId")


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        config = self.config_manager.load()
        # Outstanding tokens must survive config reloads, so the store is built once.
        self.token_store = build_token_store(
            config.imports.token_backend,
            self.state_store,
            ttl_minutes=config.imports.token_ttl_minutes,
        )
        self.scheduler = MaintenanceScheduler(self.token_store, self.config_manager)

    def import_service(self) -> ImportService:
        config = self.config_manager.load()
        return ImportService(
            self.state_store,
            self.token_store,
            schema_version=config.imports.schema_version,
            transaction_timeout_seconds=config.imports.transaction_timeout_seconds,
        )

    def calendar_service(self) -> CalendarSyncService:
        config = self.config_manager.load()
        return CalendarSyncService(
            self.state_store,
            window_days=config.calendar.window_days,
            recent_move_in_days=config.calendar.recent_move_in_days,
            transaction_timeout_seconds=config.imports.transaction_timeout_seconds,
        )


def create_app() -> FastAPI:
    config_path = os.getenv("ESTATESYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("ESTATESYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="EstateSync Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.exception_handler(EstateSyncError)
    def _estatesync_error(request: Request, exc: EstateSyncError) -> JSONResponse:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        updated = app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": updated.to_dict()}

    @app.post("/api/exports")
    def create_export(request: ExportRequest) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        actor = None
        if request.actor_id:
            actor = {"id": request.actor_id, "name": request.actor_name, "email": request.actor_email}
        document = export_snapshot(
            app.state.context.state_store.current_state(),
            schema_version=config.imports.schema_version,
            actor=actor,
        )
        app.state.context.state_store.record_audit_event(
            action="EXPORT_DATA",
            actor_id=request.actor_id,
            entity="DATA_GOVERNANCE",
            details={"message": "Exported data snapshot", "recordCounts": document["recordCounts"]},
        )
        return document

    @app.post("/api/imports/validate")
    def validate_import(request: ImportValidateRequest) -> dict[str, Any]:
        response = app.state.context.import_service().validate(request.content, actor_id=request.actor_id)
        return response.to_dict()

    @app.post("/api/imports/confirm")
    def confirm_import(request: ImportConfirmRequest) -> dict[str, Any]:
        summary = app.state.context.import_service().confirm(
            request.content,
            request.confirmation_token,
            request.approved_changes,
            actor_id=request.actor_id,
        )
        return {
            "success": True,
            "message": f"Imported {summary.total_created} new and updated {summary.total_updated} existing records",
            "summary": summary.to_dict(),
        }

    @app.post("/api/calendar/buildings/{building_id}/sync")
    def sync_building(building_id: str, request: BuildingSyncRequest) -> dict[str, Any]:
        with app.state.context.state_store.transaction() as tx:
            building = tx.get(BuildingInfoRecord, building_id)
        service = app.state.context.calendar_service()
        if "schedule_data" in request.model_fields_set:
            name = request.building_name or (building.building_name if building else "")
            if not name:
                raise HTTPException(status_code=400, detail="buildingName is required for unknown buildings")
            result = service.sync_building_schedule(building_id, name, request.schedule_data, request.actor_id)
        else:
            if building is None:
                raise HTTPException(status_code=404, detail="building not found")
            result = service.sync_building_schedule(
                building.id,
                building.building_name,
                building.garbage_schedule_structured,
                request.actor_id,
                free_text=building.garbage_schedule,
            )
        return result.to_dict()

    @app.post("/api/calendar/full-sync")
    def full_sync(request: FullSyncRequest) -> dict[str, Any]:
        return app.state.context.calendar_service().perform_full_sync(request.actor_id).to_dict()

    @app.get("/api/calendar/buildings/{building_name}/status")
    def building_status(building_name: str) -> dict[str, Any]:
        service = app.state.context.calendar_service()
        status = service.building_sync_status(building_name)
        status["prerequisites"] = service.validate_sync_prerequisites(building_name)
        return status

    @app.get("/api/calendar/tenancies/{tenancy_id}/status")
    def tenancy_status(tenancy_id: str) -> dict[str, Any]:
        return app.state.context.calendar_service().tenancy_move_event_status(tenancy_id)

    @app.get("/api/calendar/buildings/{building_name}/feed.ics")
    def building_feed(building_name: str) -> Response:
        config = app.state.context.config_manager.load()
        events = app.state.context.calendar_service().building_events(building_name)
        body = render_calendar(events, f"{config.calendar.calendar_name} - {building_name}")
        return Response(content=body, media_type="text/calendar")

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, action: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    return app


app = create_app()
