"""Core state engine: drains every background source into the shared state once per tick."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable

import httpx

from app import config
from app.constants import FALLBACK_MODEL_ID, RUNTIME_ARCHIVE_NAME, RUNTIME_BIN_DIRNAME
from app.errors import MercuryError, ProcessError
from app.runtime import AppState, RuntimeInfo
from app.settings import RuntimeSettings
from downloads.engine import (
    DownloadDone,
    DownloadError,
    DownloadEvent,
    DownloadKind,
    DownloadProgress,
    DownloadTask,
    start_download,
)
from downloads.hub import fetch_latest_release_assets, model_file_url, pick_asset_url
from downloads.library import human_size, scan_downloaded_models
from inference.backends import Backend, asset_patterns, find_server_bin, offload_layers, resolve_backend
from inference.chat_stream import ChatMessage, StreamDone, StreamError, StreamSession, Token, send_chat
from inference.supervisor import ProcessHandle, start_server
from state_engine.lifecycle import LifecycleController
from state_engine.mailbox import Mailbox

logger = logging.getLogger("mercury.state_engine")


class StateEngine:
    """Single consumer of every event source; the only writer of :class:`AppState`."""

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        *,
        state: AppState | None = None,
        runtime_dir: Path | None = None,
        models_dir: Path | None = None,
        log_dir: Path | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or RuntimeSettings.load()
        self.user_settings = self.settings.user
        self.tick_interval = self.settings.tick_interval
        self.state = state or AppState()
        self.runtime_dir = Path(runtime_dir) if runtime_dir is not None else config.runtime_dir()
        self.models_dir = Path(models_dir) if models_dir is not None else config.models_dir()
        self.log_dir = log_dir
        self.http_client = http_client
        self._download_sources: dict[DownloadKind, Mailbox[DownloadEvent]] = {}
        self._download_tasks: dict[DownloadKind, asyncio.Task[None]] = {}
        self._chat: StreamSession | None = None
        self._tick_counter = 0
        self.lifecycle = LifecycleController(
            self.user_settings,
            self._launch_server,
            clock=clock,
            on_status=self._set_status_text,
        )
        self._initialize_state()

    @property
    def bin_dir(self) -> Path:
        return self.runtime_dir / RUNTIME_BIN_DIRNAME

    def _initialize_state(self) -> None:
        """Populate defaults, detect runtimes and scan for downloaded models."""
        state = self.state
        state.backend = Backend.parse(self.settings.backend)
        state.server_url = state.server_url or self.settings.server_url
        state.model_repo = state.model_repo or self.settings.model_repo
        state.model_file = state.model_file or self.settings.model_file
        self.detect_runtimes()
        default_name = self.user_settings.default_runtime
        chosen: RuntimeInfo | None = None
        if default_name:
            chosen = next((rt for rt in state.available_runtimes if rt.name == default_name), None)
        elif state.available_runtimes:
            chosen = state.available_runtimes[0]
        if chosen is not None:
            state.current_runtime = chosen
            state.server_bin = chosen.path
            state.status_text = f"Runtime ready: {chosen.name}"
        self.scan_models()
        if state.downloaded_models:
            state.status_text = f"Found {len(state.downloaded_models)} downloaded model(s)"

    def _set_status_text(self, text: str) -> None:
        self.state.status_text = text

    # ------------------------------------------------------------------ #
    # Control tick

    async def tick(self) -> None:
        """Drain every source without blocking, then run the lifecycle checks."""
        self._tick_counter += 1
        self._drain_chat()
        self._drain_downloads()
        self._drain_logs()
        self.lifecycle.check_process_exit()
        self.lifecycle.check_idle_timeout()
        await self.lifecycle.ensure_server_running()

    async def run(self) -> None:
        """Tick forever on a fixed cadence."""
        while True:
            await self.tick()
            await asyncio.sleep(self.tick_interval)

    def _drain_chat(self) -> None:
        session = self._chat
        if session is None:
            return
        finished = False
        for event in session.mailbox.drain():
            if isinstance(event, Token):
                self.state.append_token(event.text)
            elif isinstance(event, StreamError):
                self.state.status_text = f"Chat err: {event.message}"
            elif isinstance(event, StreamDone):
                finished = True
        if finished:
            session.mailbox.close()
            self._chat = None
            self.state.streaming = False
            if not self.state.status_text.startswith("Chat err"):
                self.state.status_text = "Idle"

    def _drain_downloads(self) -> None:
        for kind, mailbox in list(self._download_sources.items()):
            terminal = False
            for event in mailbox.drain():
                self._apply_download_event(event)
                if isinstance(event, (DownloadDone, DownloadError)):
                    terminal = True
            if terminal:
                mailbox.close()
                self._download_sources.pop(kind, None)
                self._download_tasks.pop(kind, None)

    def _apply_download_event(self, event: DownloadEvent) -> None:
        state = self.state
        label = "Runtime" if event.kind is DownloadKind.RUNTIME else "Model"
        task = state.downloads.get(event.kind)
        if task is not None:
            task.apply(event)
        if isinstance(event, DownloadProgress):
            if event.stage == "unpack":
                total = "?" if event.total is None else str(event.total)
                state.status_text = f"{label} unpack: {event.current} / {total}"
            else:
                total = "?" if event.total is None else human_size(event.total)
                state.status_text = f"{label} {event.stage}: {human_size(event.current)} / {total}"
        elif isinstance(event, DownloadDone):
            state.downloads.pop(event.kind, None)
            if event.kind is DownloadKind.MODEL:
                if event.destination is not None:
                    state.model_path = event.destination
                state.status_text = "Model ready"
                self.scan_models()
            else:
                self.detect_runtimes()
                state.server_bin = find_server_bin(self.bin_dir)
                if state.server_bin is None:
                    state.status_text = "Runtime err: llama-server not found in unpacked runtime"
                else:
                    if state.available_runtimes:
                        state.current_runtime = state.available_runtimes[0]
                    state.status_text = "Runtime ready"
        elif isinstance(event, DownloadError):
            state.downloads.pop(event.kind, None)
            state.status_text = f"{label} err: {event.message}"

    def _drain_logs(self) -> None:
        source = self.lifecycle.log_source
        if source is None:
            return
        self.lifecycle.observe_lines(source.drain())

    # ------------------------------------------------------------------ #
    # Downloads

    def _begin_download(
        self,
        kind: DownloadKind,
        url: str,
        destination: Path,
        *,
        archive_path: Path | None = None,
    ) -> DownloadTask:
        if kind in self._download_sources:
            raise MercuryError(f"{kind.value} download already in progress")
        mailbox, task = start_download(
            kind,
            url,
            destination,
            archive_path=archive_path,
            client=self.http_client,
        )
        record = DownloadTask(kind=kind, url=url, destination=destination)
        self._download_sources[kind] = mailbox
        self._download_tasks[kind] = task
        self.state.downloads[kind] = record
        return record

    def start_runtime_download(self, url: str) -> DownloadTask:
        """Fetch a runtime archive and unpack it into the runtime bin directory."""
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        record = self._begin_download(
            DownloadKind.RUNTIME,
            url,
            self.bin_dir,
            archive_path=self.runtime_dir / RUNTIME_ARCHIVE_NAME,
        )
        self.state.status_text = "Downloading runtime…"
        return record

    async def ensure_runtime(self) -> DownloadTask | None:
        """Use an unpacked runtime if present, otherwise download the latest release."""
        state = self.state
        state.status_text = "Checking runtime…"
        if self.bin_dir.exists():
            state.server_bin = find_server_bin(self.bin_dir)
            if state.server_bin is None:
                state.status_text = "Runtime err: llama-server not found"
                raise ProcessError(f"llama-server not found in {self.bin_dir}")
            self.detect_runtimes()
            state.status_text = "Runtime ready"
            return None
        backend = resolve_backend(state.backend)
        assets = await fetch_latest_release_assets(client=self.http_client)
        url = pick_asset_url(assets, asset_patterns(backend))
        if url is None:
            state.status_text = "Runtime err: no matching asset for backend"
            raise MercuryError(f"no release asset matches backend {backend.value}")
        return self.start_runtime_download(url)

    def start_model_download(self, repo: str | None = None, file_name: str | None = None) -> DownloadTask | None:
        """Download ``file_name`` from hub repository ``repo`` unless it is already on disk."""
        state = self.state
        repo = (repo if repo is not None else state.model_repo).strip()
        file_name = (file_name if file_name is not None else state.model_file).strip()
        if not repo or not file_name:
            raise MercuryError("Set model repo and file")
        state.model_repo, state.model_file = repo, file_name
        destination = self.models_dir / file_name
        if destination.exists():
            state.model_path = destination
            state.status_text = "Model already downloaded"
            self.scan_models()
            return None
        record = self._begin_download(DownloadKind.MODEL, model_file_url(repo, file_name), destination)
        state.status_text = "Downloading model…"
        return record

    def cancel_download(self, kind: DownloadKind) -> bool:
        """Abandon a running download; the task stops at its next progress event."""
        mailbox = self._download_sources.pop(kind, None)
        self._download_tasks.pop(kind, None)
        if mailbox is None:
            return False
        mailbox.close()
        self.state.downloads.pop(kind, None)
        self.state.status_text = f"{kind.value.capitalize()} download canceled"
        return True

    def scan_models(self) -> None:
        self.state.downloaded_models = scan_downloaded_models(self.models_dir)

    def select_model(self, path: Path) -> None:
        path = Path(path)
        if not path.is_file():
            raise MercuryError(f"model file not found: {path}")
        self.state.model_path = path
        self.state.status_text = f"Model selected: {path.name}"

    # ------------------------------------------------------------------ #
    # Runtimes

    def detect_runtimes(self) -> None:
        runtimes: list[RuntimeInfo] = []
        server_bin = find_server_bin(self.bin_dir)
        if server_bin is not None:
            runtimes.append(RuntimeInfo(name="Local Runtime", path=server_bin, backend=self.state.backend))
        self.state.available_runtimes = runtimes

    def select_runtime(self, name: str | None) -> None:
        """Choose a detected runtime by name (``None`` clears the choice) and persist it."""
        state = self.state
        if name is None:
            state.current_runtime = None
            state.server_bin = None
            self.user_settings.default_runtime = None
            state.status_text = "No runtime selected"
        else:
            runtime = next((rt for rt in state.available_runtimes if rt.name == name), None)
            if runtime is None:
                raise MercuryError(f"unknown runtime: {name}")
            state.current_runtime = runtime
            state.server_bin = runtime.path
            self.user_settings.default_runtime = runtime.name
            state.status_text = f"Runtime selected: {runtime.name}"
        self.user_settings.save()

    # ------------------------------------------------------------------ #
    # Server

    async def _launch_server(self) -> tuple[ProcessHandle, Mailbox[str]]:
        state = self.state
        if state.server_bin is None:
            raise ProcessError("no server")
        if state.model_path is None:
            raise ProcessError("no model")
        backend = state.backend
        log_path = self.log_dir / "llama-server.log" if self.log_dir is not None else None
        handle, mailbox = await start_server(
            state.server_bin,
            state.model_path,
            offload_layers(backend),
            host=self.settings.server_host,
            port=self.settings.server_port,
            extra_args=self.settings.server_args,
            probe_interval=self.settings.probe_interval,
            probe_attempts=self.settings.probe_attempts,
            client=self.http_client,
            log_path=log_path,
        )
        state.loaded_model = str(state.model_path)
        return handle, mailbox

    async def start_server(self) -> bool:
        self.lifecycle.mark_activity()
        return await self.lifecycle.start(reason="manual")

    def stop_server(self) -> None:
        self.lifecycle.stop()

    def mark_activity(self) -> None:
        self.lifecycle.mark_activity()

    # ------------------------------------------------------------------ #
    # Chat

    def send_message(self, text: str) -> StreamSession | None:
        """Append the user's text and start streaming the assistant reply."""
        state = self.state
        text = text.strip()
        self.mark_activity()
        if not text:
            return None
        if not self.lifecycle.ready:
            state.status_text = "Server not ready yet"
        if self._chat is not None:
            self._chat.cancel()
            self._chat = None
        if state.messages and state.messages[-1].role == "user":
            last = state.messages[-1]
            last.content = f"{last.content}\n\n{text}" if last.content else text
        else:
            state.messages.append(ChatMessage("user", text))
        state.messages.append(ChatMessage("assistant", ""))
        state.trim_history(self.user_settings.max_chat_history)
        # The trailing placeholder (and any abandoned empty reply) is not sent.
        history = [
            ChatMessage(message.role, message.content)
            for message in state.messages[:-1]
            if message.content or message.role != "assistant"
        ]
        model = self.lifecycle.served_model_id or FALLBACK_MODEL_ID
        self._chat = send_chat(
            state.server_url,
            model,
            history,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
            client=self.http_client,
        )
        state.streaming = True
        return self._chat

    def cancel_chat(self) -> bool:
        if self._chat is None:
            return False
        self._chat.cancel()
        self._chat = None
        self.state.streaming = False
        self.state.status_text = "Canceled"
        return True

    def new_chat(self) -> None:
        self.cancel_chat()
        self.state.messages.clear()
        self.state.status_text = "New chat started"

    def restart_from(self, index: int) -> None:
        """Keep messages up to and including ``index`` and drop the rest."""
        if index < 0 or index >= len(self.state.messages):
            raise MercuryError(f"no message at index {index}")
        self.cancel_chat()
        del self.state.messages[index + 1:]

    def edit_message(self, index: int, content: str) -> None:
        if index < 0 or index >= len(self.state.messages):
            raise MercuryError(f"no message at index {index}")
        self.state.messages[index].content = content

    # ------------------------------------------------------------------ #
    # Settings / lifecycle of the engine itself

    def save_settings(self) -> None:
        self.user_settings.save()
        self.state.status_text = "Settings saved"

    def snapshot(self) -> dict[str, Any]:
        payload = self.state.snapshot()
        payload["server"] = self.lifecycle.to_dict()
        payload["settings"] = self.user_settings.to_mapping()
        payload["tick"] = self._tick_counter
        return payload

    async def shutdown(self) -> None:
        """Abandon every source and stop the server."""
        self.cancel_chat()
        for kind in list(self._download_sources):
            self.cancel_download(kind)
        await self.lifecycle.shutdown()


__all__ = ["StateEngine"]
