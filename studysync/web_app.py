from __future__ import annotations

import hmac
import json
import logging
import os
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from starlette.concurrency import run_in_threadpool

from studysync.config_manager import ConfigManager
from studysync.errors import (
    AuthenticationError,
    InvalidRequestError,
    PermissionDeniedError,
    RateLimitExceededError,
    StudySyncError,
)
from studysync.rate_limiter import RateLimiter
from studysync.scheduler import SyncScheduler
from studysync.state_store import StateStore
from studysync.sync_engine import SyncEngine
from studysync.webhook import CHANNEL_ID_HEADER, WebhookListener


logger = logging.getLogger(__name__)

AUTHENTICATED_ACTIONS = ("setup-webhook", "full-sync", "incremental-sync", "conflict-resolution")


class SyncRequest(BaseModel):
    action: str = ""
    user_id: str | None = Field(default=None, alias="userId")
    conflict_data: dict[str, Any] | None = Field(default=None, alias="conflictData")


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.webhook_listener = WebhookListener(self.state_store, self.sync_engine)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager, self.state_store)

    def rate_limiter(self) -> RateLimiter:
        server = self.config_manager.load().server
        return RateLimiter(self.state_store, server.rate_limit_requests, server.rate_limit_window_seconds)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    google = sanitized.get("google")
    if isinstance(google, dict):
        secret = google.get("client_secret")
        if secret is not None and str(secret).strip() in {"", "***"}:
            if str(current.get("google", {}).get("client_secret", "")):
                google.pop("client_secret", None)
            else:
                google["client_secret"] = ""
        if not google:
            sanitized.pop("google", None)
    return sanitized


def _bearer_token(request: Request) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


async def _read_payload(request: Request) -> dict[str, Any]:
    body = await request.body()
    if not body.strip():
        return {}
    try:
        payload = json.loads(body)
    except ValueError:
        raise InvalidRequestError("Request body must be valid JSON") from None
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return payload


def create_app() -> FastAPI:
    config_path = os.getenv("STUDYSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("STUDYSYNC_STATE_PATH", "data/state.db")
    # Shared config is operator-only; never a per-user API key.
    admin_token = os.getenv("STUDYSYNC_ADMIN_TOKEN", "").strip()
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="StudySync Calendar Sync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        if app.state.context.config_manager.load().sync.scheduler_enabled:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.exception_handler(StudySyncError)
    async def _studysync_error(request: Request, exc: StudySyncError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc) or exc.error_class, "details": exc.details()},
        )

    def require_caller(request: Request) -> str:
        caller = app.state.context.state_store.user_for_api_key(_bearer_token(request))
        if caller is None:
            raise AuthenticationError("Missing or invalid authorization")
        return caller

    def require_admin(request: Request) -> str:
        token = _bearer_token(request)
        if not token:
            raise AuthenticationError("Missing or invalid authorization")
        if not admin_token or not hmac.compare_digest(token.encode(), admin_token.encode()):
            raise PermissionDeniedError("Configuration access requires the admin token")
        return "admin"

    def _authorize(request: Request, sync_request: SyncRequest) -> str:
        caller = require_caller(request)
        if sync_request.user_id and sync_request.user_id != caller:
            raise PermissionDeniedError("userId does not match the authenticated caller")
        if not app.state.context.rate_limiter().allow(f"caller:{caller}"):
            raise RateLimitExceededError("Too many requests")
        return caller

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/")
    async def invoke(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        payload = await _read_payload(request)
        if not payload and request.headers.get(CHANNEL_ID_HEADER):
            payload = {"action": "webhook"}
        try:
            sync_request = SyncRequest(**payload)
        except ValidationError as exc:
            raise InvalidRequestError(f"Invalid request body: {exc.errors()}") from None

        action = sync_request.action
        if action == "webhook":
            status, body = app.state.context.webhook_listener.handle(
                request.headers,
                schedule=background_tasks.add_task,
            )
            return JSONResponse(status_code=status, content=body)
        if action not in AUTHENTICATED_ACTIONS:
            raise InvalidRequestError(f"Invalid action: {action or '<missing>'}")

        user_id = await run_in_threadpool(_authorize, request, sync_request)
        engine = app.state.context.sync_engine
        if action == "setup-webhook":
            content = await run_in_threadpool(engine.setup_webhook, user_id)
        elif action == "full-sync":
            result = await run_in_threadpool(engine.full_sync, user_id)
            content = {"success": True, "message": result.message, "result": result.to_dict()}
        elif action == "incremental-sync":
            result = await run_in_threadpool(engine.incremental_sync, user_id)
            content = {"success": True, "message": result.message, "result": result.to_dict()}
        else:
            content = await run_in_threadpool(engine.resolve_conflict, user_id, sync_request.conflict_data)
        return JSONResponse(status_code=200, content=content)

    @app.get("/api/sync/operations")
    def sync_operations(limit: int = 20, caller: str = Depends(require_caller)) -> dict[str, Any]:
        return {"operations": app.state.context.sync_engine.list_operations(caller, limit=limit)}

    @app.get("/api/conflicts")
    def conflicts(include_resolved: bool = False, caller: str = Depends(require_caller)) -> dict[str, Any]:
        return {"conflicts": app.state.context.sync_engine.list_conflicts(caller, include_resolved)}

    @app.get("/api/config")
    def get_config(caller: str = Depends(require_admin)) -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest, caller: str = Depends(require_admin)) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        app.state.context.config_manager.update(_sanitize_config_payload(request.payload, current))
        logger.info("Configuration updated", extra={"user_id": caller})
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    return app


app = create_app()
