from __future__ import annotations

import hashlib
import hmac
import os
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from calmirror.config_manager import SECRET_PATHS, ConfigManager
from calmirror.scheduler import SyncScheduler
from calmirror.state_store import StateStore
from calmirror.sync_engine import SyncEngine


SIGNED_MESSAGE = b"sync"


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncRunRequest(BaseModel):
    feed_url: str | None = None
    lookahead_days: int | None = Field(default=None, ge=1, le=3650)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def expected_signature(secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), SIGNED_MESSAGE, hashlib.sha256).hexdigest()


def verify_signature(secret: str, provided: str) -> bool:
    if not secret:
        return True
    candidate = str(provided or "").strip().lower()
    if not candidate:
        return False
    return hmac.compare_digest(candidate, expected_signature(secret))


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    for section_name, key in SECRET_PATHS:
        section = sanitized.get(section_name)
        if not isinstance(section, dict) or key not in section:
            continue
        section = dict(section)
        value_text = str(section.get(key) or "").strip()
        if value_text in {"", "***"}:
            if str(current.get(section_name, {}).get(key, "")):
                section.pop(key, None)
            else:
                section[key] = ""
        if section:
            sanitized[section_name] = section
        else:
            sanitized.pop(section_name, None)
    return sanitized


def create_app() -> FastAPI:
    config_path = os.getenv("CALMIRROR_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALMIRROR_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="calmirror", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/", response_class=PlainTextResponse, include_in_schema=False)
    def root() -> str:
        return "OK"

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/sync")
    def trigger_sync(signature: str = Query(default="", alias="hmac"), quiet: str = "") -> Any:
        config = app.state.context.config_manager.load()
        if not verify_signature(config.server.sync_secret, signature):
            raise HTTPException(status_code=401, detail="unauthorized")
        scheduler = app.state.context.scheduler
        already_running = scheduler.is_running()
        scheduler.trigger_manual()
        if quiet == "1":
            return PlainTextResponse("OK")
        return {"ok": True, "started": True, "already_running": already_running}

    @app.post("/api/sync/run")
    def run_sync(request: SyncRunRequest) -> dict[str, Any]:
        result = app.state.context.scheduler.run_now(
            trigger="api",
            feed_url_override=request.feed_url or None,
            lookahead_override=request.lookahead_days,
        )
        if result is None:
            raise HTTPException(status_code=409, detail="sync already running")
        return result.to_dict()

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {
            "running": app.state.context.scheduler.is_running(),
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load_file().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    return app
