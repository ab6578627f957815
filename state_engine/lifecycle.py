"""Server lifecycle: status transitions, auto-start and idle shutdown."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable

from app.constants import MODEL_SENTINEL, READY_SENTINEL
from app.errors import describe_error
from app.settings import UserSettings
from inference.supervisor import ProcessHandle, RingLog
from state_engine.mailbox import Mailbox
from state_engine.status import ServerStatus, StatusKind

logger = logging.getLogger("mercury.lifecycle")

Launcher = Callable[[], Awaitable["tuple[ProcessHandle, Mailbox[str]]"]]


class LifecycleController:
    """Owns the single ServerStatus and the live ProcessHandle.

    Every method is called from the control loop; nothing here runs on a
    background task.
    """

    def __init__(
        self,
        settings: UserSettings,
        launcher: Launcher,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_status: Callable[[str], None] | None = None,
    ) -> None:
        self.settings = settings
        self._launcher = launcher
        self._clock = clock
        self._on_status = on_status or (lambda _text: None)
        self.status = ServerStatus.stopped()
        self.handle: ProcessHandle | None = None
        self.log_source: Mailbox[str] | None = None
        self.log = RingLog()
        self.last_activity = clock()
        self.demand_pending = False
        self._reapers: set[asyncio.Task[None]] = set()

    @property
    def ready(self) -> bool:
        return self.handle is not None and self.handle.ready

    @property
    def served_model_id(self) -> str | None:
        return self.handle.served_model_id if self.handle is not None else None

    def mark_activity(self) -> None:
        self.last_activity = self._clock()
        self.demand_pending = True

    def idle_seconds(self) -> float:
        return max(0.0, self._clock() - self.last_activity)

    def _set_status(self, status: ServerStatus, text: str | None = None) -> None:
        if status != self.status:
            logger.info("Server status %s -> %s", self.status.label, status.label)
        self.status = status
        if text:
            self._on_status(text)

    async def start(self, *, reason: str = "manual") -> bool:
        """Spawn the server unless one is already running; ``False`` on failure."""
        if self.handle is not None:
            return True
        self._set_status(ServerStatus.starting(), "Server starting…" if reason == "manual" else "Auto-starting server...")
        try:
            handle, log_source = await self._launcher()
        except Exception as exc:
            message = describe_error(exc)
            prefix = "Auto-start failed" if reason == "auto" else "Start failed"
            self._set_status(ServerStatus.error(f"{prefix}: {message}"), f"{prefix}: {message}")
            return False
        if self.log_source is not None:
            self.log_source.close()
        self.handle = handle
        self.log_source = log_source
        self.log = handle.log
        self.last_activity = self._clock()
        return True

    def stop(self, *, text: str = "Server stopped") -> None:
        """Hard-kill any running server and return to Stopped."""
        self._discard_handle()
        if self.log_source is not None:
            self.log_source.close()
            self.log_source = None
        self.demand_pending = False
        self._set_status(ServerStatus.stopped(), text)

    def _discard_handle(self) -> None:
        handle, self.handle = self.handle, None
        if handle is None:
            return
        handle.kill()
        reaper = asyncio.ensure_future(handle.stop())
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

    def observe_lines(self, lines: Iterable[str]) -> None:
        """Interpret sentinel lines and record every line in the ring log."""
        for line in lines:
            if line.startswith(READY_SENTINEL) and self.handle is not None:
                self.handle.ready = True
                self._set_status(ServerStatus.running(), "Server ready")
            elif line.startswith(MODEL_SENTINEL) and self.handle is not None:
                self.handle.served_model_id = line[len(MODEL_SENTINEL):].strip() or None
            self.log.append(line)

    async def ensure_server_running(self) -> None:
        """Auto-start when enabled, idle, not ready and the user asked for it."""
        if not self.settings.auto_start_server or not self.demand_pending:
            return
        if self.ready or self.handle is not None or self.status.kind is not StatusKind.STOPPED:
            return
        await self.start(reason="auto")

    def check_idle_timeout(self) -> bool:
        """Stop a ready server that saw no activity for the configured duration."""
        if not self.settings.auto_stop_server or not self.ready:
            return False
        if self.idle_seconds() <= self.settings.server_timeout_seconds:
            return False
        logger.info("Stopping llama-server after %.0fs of inactivity", self.idle_seconds())
        self.stop(text="Server auto-stopped (inactive)")
        return True

    def check_process_exit(self) -> bool:
        """Notice a server that exited on its own."""
        if self.handle is None or self.handle.returncode is None:
            return False
        code = self.handle.returncode
        logger.warning("llama-server exited unexpectedly with code %s", code)
        self._discard_handle()
        self.demand_pending = False
        message = f"llama-server exited with code {code}"
        self._set_status(ServerStatus.error(message), f"Server err: {message}")
        return True

    async def shutdown(self) -> None:
        """Kill the server and wait for every reaper to finish."""
        self.stop(text="Server stopped")
        if self._reapers:
            await asyncio.gather(*list(self._reapers), return_exceptions=True)

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status.to_dict(),
            "ready": self.ready,
            "served_model_id": self.served_model_id,
            "idle_seconds": round(self.idle_seconds(), 1),
            "process": self.handle.to_dict() if self.handle is not None else None,
        }


__all__ = ["LifecycleController", "Launcher"]
