"""FastAPI endpoints exposing the encounter engine and websocket sync."""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from rpgencounter.backend.config import load_settings
from rpgencounter.backend.engine import EncounterEngine, EngineEvent
from rpgencounter.backend.errors import (
    EncounterError,
    EntityNotFoundError,
    InvalidTransitionError,
    ValidationError,
)
from rpgencounter.backend.oracle import ChatCompletionsOracle
from rpgencounter.backend.prompts import DefaultPromptAssembler
from rpgencounter.backend.store import create_store


class SessionResponse(BaseModel):
    state: dict[str, Any]
    ok: bool = True


class StartResponse(BaseModel):
    state: dict[str, Any]
    has_saved_session: bool


class ConfigureRequest(BaseModel):
    profile_id: str | None = None
    profile: dict[str, Any] | None = None
    avatar_name: str | None = Field(default=None, max_length=100)
    scene_context: str = Field(default="", max_length=4000)
    special_instructions: str = Field(default="", max_length=500)
    history_depth: int | None = Field(default=None, ge=0, le=100)
    narrative: dict[str, Any] | None = None
    summary_narrative: dict[str, Any] | None = None


class ActionRequest(BaseModel):
    action: str = Field(min_length=1, max_length=500)


class ConcludeRequest(BaseModel):
    reason: str = Field(default="interrupted", min_length=1)


class CombatantRequest(BaseModel):
    side: str = Field(pattern="^(party|opposition)$")
    data: dict[str, Any] = Field(default_factory=dict)


class CombatantPatch(BaseModel):
    patch: dict[str, Any]


class EnvironmentRequest(BaseModel):
    environment: str = Field(max_length=500)


class RegenerateRequest(BaseModel):
    apply_state: bool = False


class SwipeRequest(BaseModel):
    index: int = Field(ge=0)


class ProfileImportRequest(BaseModel):
    text: str = Field(min_length=1, max_length=20000)


class SessionWebSocketHub:
    def __init__(self) -> None:
        self._connections: set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        self._connections.discard(websocket)

    async def send_state(self, websocket: WebSocket, state: dict[str, Any]) -> None:
        await websocket.send_json({"type": "state.full", "state": state})

    async def broadcast(self, events: list[EngineEvent], state: dict[str, Any]) -> None:
        stale_connections: list[WebSocket] = []
        for websocket in list(self._connections):
            try:
                for event in events:
                    await websocket.send_json({"type": f"event.{event.name}", "payload": event.payload})
                await self.send_state(websocket, state)
            except RuntimeError:
                stale_connections.append(websocket)
        for websocket in stale_connections:
            self.disconnect(websocket)


def _http_error(exc: EncounterError) -> HTTPException:
    if isinstance(exc, EntityNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _default_engine() -> EncounterEngine:
    settings = load_settings()
    oracle = ChatCompletionsOracle(
        settings.oracle_url,
        model=settings.oracle_model,
        api_key=settings.oracle_api_key,
        timeout=settings.oracle_timeout,
    )
    return EncounterEngine(
        oracle=oracle,
        prompts=DefaultPromptAssembler(),
        store=create_store(settings.database_url, settings.state_path),
        oracle_timeout=settings.oracle_timeout,
        history_depth=settings.history_depth,
    )


def create_app(engine: EncounterEngine | None = None) -> FastAPI:
    app = FastAPI(title="RPG Encounter API", version="0.3.0")
    encounter_engine = engine if engine is not None else _default_engine()
    websocket_hub = SessionWebSocketHub()
    app.state.engine = encounter_engine
    app.state.websocket_hub = websocket_hub

    async def run_command(command: Callable[[], Any | Awaitable[Any]]) -> Any:
        events: list[EngineEvent] = []
        unsubscribe = encounter_engine.subscribe(events.append)
        try:
            result = command()
            if inspect.isawaitable(result):
                result = await result
            return result
        except EncounterError as exc:
            raise _http_error(exc) from exc
        finally:
            unsubscribe()
            await websocket_hub.broadcast(events, encounter_engine.snapshot())

    def session_response(ok: bool = True) -> SessionResponse:
        return SessionResponse(state=encounter_engine.snapshot(), ok=ok)

    @app.get("/api/session", response_model=SessionResponse)
    def get_session() -> SessionResponse:
        return session_response()

    @app.post("/api/session/start", response_model=StartResponse)
    async def start_session() -> StartResponse:
        has_saved = await run_command(encounter_engine.start)
        return StartResponse(state=encounter_engine.snapshot(), has_saved_session=has_saved)

    @app.post("/api/session/resume", response_model=SessionResponse)
    async def resume_session() -> SessionResponse:
        await run_command(encounter_engine.resume)
        return session_response()

    @app.post("/api/session/discard", response_model=SessionResponse)
    async def discard_saved_session() -> SessionResponse:
        await run_command(encounter_engine.discard_saved)
        return session_response()

    @app.post("/api/session/configure", response_model=SessionResponse)
    async def configure_session(payload: ConfigureRequest) -> SessionResponse:
        await run_command(lambda: encounter_engine.configure(**payload.model_dump()))
        return session_response()

    @app.post("/api/session/initialize", response_model=SessionResponse)
    async def initialize_session() -> SessionResponse:
        ok = await run_command(encounter_engine.initialize)
        return session_response(ok)

    @app.post("/api/session/actions", response_model=SessionResponse)
    async def submit_action(payload: ActionRequest) -> SessionResponse:
        ok = await run_command(lambda: encounter_engine.submit_action(payload.action))
        return session_response(ok)

    @app.post("/api/session/retry", response_model=SessionResponse)
    async def retry_request() -> SessionResponse:
        ok = await run_command(encounter_engine.retry)
        return session_response(ok)

    @app.post("/api/session/conclude", response_model=SessionResponse)
    async def conclude_session(payload: ConcludeRequest) -> SessionResponse:
        ok = await run_command(lambda: encounter_engine.conclude(payload.reason))
        return session_response(ok)

    @app.post("/api/session/reset", response_model=SessionResponse)
    async def reset_session() -> SessionResponse:
        await run_command(encounter_engine.reset)
        return session_response()

    @app.post("/api/session/pending/{pending_id}/approve", response_model=SessionResponse)
    async def approve_entity(pending_id: str) -> SessionResponse:
        await run_command(lambda: encounter_engine.approve_entity(pending_id))
        return session_response()

    @app.post("/api/session/pending/{pending_id}/reject", response_model=SessionResponse)
    async def reject_entity(pending_id: str) -> SessionResponse:
        await run_command(lambda: encounter_engine.reject_entity(pending_id))
        return session_response()

    @app.post("/api/session/combatants", response_model=SessionResponse)
    async def add_combatant(payload: CombatantRequest) -> SessionResponse:
        await run_command(lambda: encounter_engine.add_combatant(payload.side, payload.data))
        return session_response()

    @app.patch("/api/session/combatants/{name}", response_model=SessionResponse)
    async def edit_combatant(name: str, payload: CombatantPatch) -> SessionResponse:
        await run_command(lambda: encounter_engine.edit_combatant(name, payload.patch))
        return session_response()

    @app.delete("/api/session/combatants/{name}", response_model=SessionResponse)
    async def remove_combatant(name: str) -> SessionResponse:
        await run_command(lambda: encounter_engine.remove_combatant(name))
        return session_response()

    @app.put("/api/session/environment", response_model=SessionResponse)
    async def set_environment(payload: EnvironmentRequest) -> SessionResponse:
        await run_command(lambda: encounter_engine.set_environment(payload.environment))
        return session_response()

    @app.post("/api/session/log/{entry_id}/regenerate", response_model=SessionResponse)
    async def regenerate_entry(entry_id: int, payload: RegenerateRequest) -> SessionResponse:
        await run_command(lambda: encounter_engine.regenerate_entry(entry_id, apply_state=payload.apply_state))
        return session_response()

    @app.put("/api/session/log/{entry_id}/swipe", response_model=SessionResponse)
    async def set_active_swipe(entry_id: int, payload: SwipeRequest) -> SessionResponse:
        await run_command(lambda: encounter_engine.set_active_swipe(entry_id, payload.index))
        return session_response()

    @app.get("/api/archive")
    def list_archive() -> list[dict[str, Any]]:
        try:
            return encounter_engine.archive()
        except EncounterError as exc:
            raise _http_error(exc) from exc

    @app.get("/api/profiles")
    def list_profiles() -> list[dict[str, Any]]:
        return [profile.to_dict() for profile in encounter_engine.profiles.all()]

    @app.post("/api/profiles")
    def save_profile(payload: dict[str, Any]) -> dict[str, Any]:
        try:
            return encounter_engine.profiles.save(payload).to_dict()
        except EncounterError as exc:
            raise _http_error(exc) from exc

    @app.delete("/api/profiles/{profile_id}")
    def delete_profile(profile_id: str) -> dict[str, bool]:
        if encounter_engine.profiles.get(profile_id) is None:
            raise HTTPException(status_code=404, detail="Profile not found")
        if not encounter_engine.profiles.delete(profile_id):
            raise HTTPException(status_code=409, detail="Preset profiles cannot be deleted")
        return {"deleted": True}

    @app.post("/api/profiles/{profile_id}/duplicate")
    def duplicate_profile(profile_id: str) -> dict[str, Any]:
        try:
            return encounter_engine.profiles.duplicate(profile_id).to_dict()
        except EncounterError as exc:
            raise _http_error(exc) from exc

    @app.get("/api/profiles/{profile_id}/export")
    def export_profile(profile_id: str) -> dict[str, str]:
        try:
            return {"text": encounter_engine.profiles.export_profile(profile_id)}
        except EncounterError as exc:
            raise _http_error(exc) from exc

    @app.post("/api/profiles/import")
    def import_profile(payload: ProfileImportRequest) -> dict[str, Any]:
        try:
            return encounter_engine.profiles.import_profile(payload.text).to_dict()
        except EncounterError as exc:
            raise _http_error(exc) from exc

    @app.websocket("/ws/session")
    async def session_ws(websocket: WebSocket) -> None:
        await websocket_hub.connect(websocket)
        await websocket_hub.send_state(websocket, encounter_engine.snapshot())

        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            websocket_hub.disconnect(websocket)

    return app


app = create_app()
