"""FastAPI entrypoint exposing the orchestration core to a local front end."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from app import config
from app.errors import MercuryError, NetworkError
from app.settings import RuntimeSettings, UserSettings
from downloads.engine import DownloadKind
from downloads.hub import list_gguf_files, search_models
from state_engine.engine import StateEngine

logger = logging.getLogger("mercury.main")

app = FastAPI(title="Mercury LM")
state_engine: StateEngine | None = None
update_task: asyncio.Task[None] | None = None


class ModelDownloadRequest(BaseModel):
    """Schema describing a hub file to fetch."""

    repo: str | None = Field(default=None, description="Hub repository, e.g. 'TheBloke/Mistral-7B-Instruct-v0.2-GGUF'.")
    file: str | None = Field(default=None, description="GGUF file name inside the repository.")


class ModelSelectRequest(BaseModel):
    path: str = Field(..., min_length=1)


class RuntimeSelectRequest(BaseModel):
    name: str | None = Field(default=None, description="Detected runtime name; null clears the selection.")


class ChatMessagePayload(BaseModel):
    """Schema describing messages sent from the chat UI."""

    message: str = Field(..., min_length=1, max_length=20000)


class MessageIndexRequest(BaseModel):
    index: int = Field(..., ge=0)


class MessageEditRequest(BaseModel):
    index: int = Field(..., ge=0)
    content: str


class SettingsPayload(BaseModel):
    auto_start_server: bool | None = None
    auto_stop_server: bool | None = None
    server_timeout_minutes: float | None = Field(default=None, ge=5, le=120)
    max_chat_history: int | None = Field(default=None, ge=100, le=10000)


def get_engine() -> StateEngine:
    """Return the shared engine, creating it on first use."""
    global state_engine
    if state_engine is None:
        config.ensure_layout()
        state_engine = StateEngine(RuntimeSettings.load(), log_dir=config.log_dir())
    return state_engine


def _conflict(exc: MercuryError) -> HTTPException:
    status = 502 if isinstance(exc, NetworkError) else 409
    return HTTPException(status_code=status, detail=str(exc))


async def run_state_updates() -> None:
    """Continuously tick the state engine on a fixed interval."""
    engine = get_engine()
    while True:
        try:
            await engine.tick()
        except Exception:  # pragma: no cover - keep the loop alive
            logger.exception("State engine tick failed")
        await asyncio.sleep(engine.tick_interval)


@app.on_event("startup")
async def start_background_tasks() -> None:
    """Initialize the background drain loop when the app starts."""
    global update_task
    if update_task is None or update_task.done():
        update_task = asyncio.create_task(run_state_updates())


@app.on_event("shutdown")
async def stop_background_tasks() -> None:
    """Cancel the drain loop and kill any server when the app stops."""
    global update_task
    if update_task is not None:
        update_task.cancel()
        try:
            await update_task
        except asyncio.CancelledError:
            pass
        update_task = None
    if state_engine is not None:
        await state_engine.shutdown()


@app.get("/ping")
async def ping() -> dict[str, str]:
    """Simple health check endpoint reporting the server status."""
    return {"status": "alive", "server": get_engine().lifecycle.status.label}


@app.get("/state")
async def get_state() -> dict[str, Any]:
    """Expose the most recent state snapshot."""
    return get_engine().snapshot()


@app.get("/logs")
async def get_logs(limit: int = 200) -> dict[str, Any]:
    log = get_engine().lifecycle.log
    return {"lines": log.tail(max(0, limit)), "total": len(log), "capacity": log.capacity}


@app.post("/activity")
async def record_activity() -> dict[str, Any]:
    engine = get_engine()
    engine.mark_activity()
    return {"idle_seconds": engine.lifecycle.idle_seconds()}


@app.post("/runtime/ensure")
async def ensure_runtime() -> dict[str, Any]:
    engine = get_engine()
    try:
        task = await engine.ensure_runtime()
    except MercuryError as exc:
        raise _conflict(exc) from exc
    return {"download": task.to_dict() if task else None, "status": engine.state.status_text}


@app.post("/runtime/select")
async def select_runtime(request: RuntimeSelectRequest) -> dict[str, Any]:
    engine = get_engine()
    try:
        engine.select_runtime(request.name)
    except MercuryError as exc:
        raise _conflict(exc) from exc
    return {"status": engine.state.status_text}


@app.post("/models/download")
async def download_model(request: ModelDownloadRequest) -> dict[str, Any]:
    engine = get_engine()
    try:
        task = engine.start_model_download(request.repo, request.file)
    except MercuryError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"download": task.to_dict() if task else None, "status": engine.state.status_text}


@app.post("/models/select")
async def select_model(request: ModelSelectRequest) -> dict[str, Any]:
    engine = get_engine()
    try:
        engine.select_model(Path(request.path))
    except MercuryError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"model_path": request.path}


@app.post("/downloads/{kind}/cancel")
async def cancel_download(kind: DownloadKind) -> dict[str, bool]:
    return {"canceled": get_engine().cancel_download(kind)}


@app.get("/models")
async def list_models() -> dict[str, Any]:
    engine = get_engine()
    engine.scan_models()
    return {"models": [model.to_dict() for model in engine.state.downloaded_models]}


@app.get("/models/search")
async def hub_search(q: str) -> dict[str, Any]:
    try:
        results = await search_models(q, client=get_engine().http_client)
    except MercuryError as exc:
        raise _conflict(exc) from exc
    return {"results": results}


@app.get("/models/files")
async def hub_files(repo: str) -> dict[str, Any]:
    try:
        files = await list_gguf_files(repo, client=get_engine().http_client)
    except MercuryError as exc:
        raise _conflict(exc) from exc
    return {"files": [{"rfilename": item.rfilename, "size": item.size} for item in files]}


@app.post("/server/start")
async def start_server() -> dict[str, Any]:
    engine = get_engine()
    started = await engine.start_server()
    payload = engine.lifecycle.to_dict()
    if not started:
        raise HTTPException(status_code=409, detail=payload["status"]["message"])
    return payload


@app.post("/server/stop")
async def stop_server() -> dict[str, Any]:
    engine = get_engine()
    engine.stop_server()
    return engine.lifecycle.to_dict()


@app.post("/chat")
async def chat(payload: ChatMessagePayload) -> dict[str, Any]:
    """Queue a user message; the reply streams into /state as it arrives."""
    engine = get_engine()
    engine.send_message(payload.message)
    return {"streaming": engine.state.streaming, "messages": len(engine.state.messages)}


@app.post("/chat/cancel")
async def cancel_chat() -> dict[str, bool]:
    return {"canceled": get_engine().cancel_chat()}


@app.post("/chat/new")
async def new_chat() -> dict[str, str]:
    engine = get_engine()
    engine.new_chat()
    return {"status": engine.state.status_text}


@app.post("/chat/restart")
async def restart_chat(request: MessageIndexRequest) -> dict[str, int]:
    engine = get_engine()
    try:
        engine.restart_from(request.index)
    except MercuryError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"messages": len(engine.state.messages)}


@app.post("/chat/edit")
async def edit_chat(request: MessageEditRequest) -> dict[str, int]:
    engine = get_engine()
    try:
        engine.edit_message(request.index, request.content)
    except MercuryError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"messages": len(engine.state.messages)}


@app.get("/settings")
async def get_settings() -> dict[str, Any]:
    return get_engine().user_settings.to_mapping()


@app.post("/settings")
async def update_settings(payload: SettingsPayload) -> dict[str, Any]:
    engine = get_engine()
    updates = payload.model_dump(exclude_none=True)
    merged = {**engine.user_settings.to_mapping(), **updates}
    fresh = UserSettings.from_mapping(merged)
    for key, value in fresh.to_mapping().items():
        setattr(engine.user_settings, key, value)
    try:
        engine.save_settings()
    except MercuryError as exc:
        raise _conflict(exc) from exc
    return engine.user_settings.to_mapping()


__all__ = ["app", "get_engine"]
