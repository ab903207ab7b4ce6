from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from mirrorsync.asana_client import AsanaTaskAdapter
from mirrorsync.config_manager import ConfigManager, mask_config, resolve_config
from mirrorsync.identity_map import IdentityMap
from mirrorsync.management_api import ManagementApiClient
from mirrorsync.microsoft365_client import Microsoft365CalendarAdapter
from mirrorsync.models import AppConfig, ContextSnapshot
from mirrorsync.projection import ProjectionBuilder
from mirrorsync.reconciler import Reconciler
from mirrorsync.state_store import StateStore
from mirrorsync.watcher import ContextWatcher, SyncDispatcher


class NotificationRequest(BaseModel):
    current_page: str = Field(min_length=1)
    entity_id: str = ""
    variant_id: str = ""
    environment_id: str = ""
    title: str = ""


class AppContext:
    def __init__(self, config_path: str, state_path: str, environ: dict[str, str] | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        self.config: AppConfig = resolve_config(self.config_manager, environ)
        self.state_store = StateStore(state_path)
        self.identity_map = IdentityMap()
        self.reconciler = Reconciler(
            [
                Microsoft365CalendarAdapter(self.config.microsoft365, self.state_store),
                AsanaTaskAdapter(self.config.asana, self.state_store),
            ],
            identity_map=self.identity_map,
            state_store=self.state_store,
            sync_settings=self.config.sync_settings,
        )
        self.projection_builder = ProjectionBuilder(
            ManagementApiClient(self.config.management_api),
            self.config.sync_settings,
            self.state_store,
        )
        self.watcher = ContextWatcher(state_store=self.state_store)
        self.dispatcher = SyncDispatcher(
            self.watcher,
            self.projection_builder,
            self.reconciler,
            state_store=self.state_store,
            max_workers=int(os.getenv("MIRRORSYNC_WORKERS", "4")),
        )


def _record_to_dict(entity_id: str, variant_id: str, record: Any) -> dict[str, Any]:
    return {"entity_id": entity_id, "variant_id": variant_id, **record.to_dict()}


def create_app() -> FastAPI:
    config_path = os.getenv("MIRRORSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("MIRRORSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="mirrorsync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.dispatcher.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.dispatcher.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {"status": "ok", "dispatcher_running": app.state.context.dispatcher.running}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return mask_config(app.state.context.config)

    @app.post("/api/notifications", status_code=202)
    def post_notification(request: NotificationRequest) -> dict[str, Any]:
        snapshot = ContextSnapshot.from_dict(request.model_dump())
        app.state.context.watcher.publish(snapshot)
        return {
            "message": "notification accepted",
            "trackable": snapshot.is_trackable,
        }

    @app.get("/api/sync-status")
    def list_sync_status() -> dict[str, Any]:
        records = [
            _record_to_dict(key.entity_id, key.variant_id, record)
            for key, record in app.state.context.identity_map.items()
        ]
        return {"records": records}

    @app.get("/api/sync-status/{entity_id}/{variant_id}")
    def get_sync_status(entity_id: str, variant_id: str) -> dict[str, Any]:
        record = app.state.context.reconciler.sync_status(entity_id, variant_id)
        if record is None:
            raise HTTPException(status_code=404, detail="no sync record for this item")
        return _record_to_dict(entity_id, variant_id, record)

    @app.get("/api/runs")
    def recent_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_reconcile_runs(limit=limit)}

    @app.get("/api/audit")
    def recent_audit(limit: int = 100, action: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    @app.get("/api/audit/{event_id}")
    def get_audit_event(event_id: int) -> dict[str, Any]:
        event = app.state.context.state_store.get_audit_event(event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="audit event not found")
        return event

    return app


app = create_app()
