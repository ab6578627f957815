"""Runtime helper for spawning and watching a local llama.cpp server."""

from __future__ import annotations

import asyncio
import logging
import shlex
from collections import deque
from pathlib import Path
from typing import Any, Iterator, Sequence, TextIO

import httpx

from app.constants import (
    DEFAULT_SERVER_HOST,
    DEFAULT_SERVER_PORT,
    HEALTH_ENDPOINT,
    MODEL_SENTINEL,
    READINESS_PROBE_ATTEMPTS,
    READINESS_PROBE_INTERVAL,
    READY_LINE,
    SERVER_LOG_CAPACITY,
    STDERR_TAG,
    STDOUT_TAG,
)
from app.errors import ProcessError, ReadinessTimeout
from state_engine.mailbox import Mailbox

logger = logging.getLogger("mercury.supervisor")


class RingLog:
    """Fixed-capacity line buffer that evicts the oldest line first."""

    def __init__(self, capacity: int = SERVER_LOG_CAPACITY) -> None:
        self.capacity = capacity
        self._lines: deque[str] = deque(maxlen=capacity)

    def append(self, line: str) -> None:
        self._lines.append(line)

    def tail(self, limit: int | None = None) -> list[str]:
        if limit is None or limit >= len(self._lines):
            return list(self._lines)
        return list(self._lines)[-limit:]

    def clear(self) -> None:
        self._lines.clear()

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[str]:
        return iter(self._lines)


class ProcessHandle:
    """A spawned llama-server plus the tasks that watch it.

    ``ready`` and ``served_model_id`` are written by the control loop when it
    interprets sentinel lines; the background tasks never touch them.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        base_url: str,
        model_path: Path,
        tasks: Sequence[asyncio.Task[None]] = (),
        log: RingLog | None = None,
    ) -> None:
        self.process = process
        self.base_url = base_url
        self.model_path = model_path
        self.tasks: list[asyncio.Task[None]] = list(tasks)
        self.log = log if log is not None else RingLog()
        self.ready = False
        self.served_model_id: str | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def kill(self) -> None:
        """Hard-kill the child and cancel its watcher tasks."""
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:  # pragma: no cover - already gone
                pass
        for task in self.tasks:
            task.cancel()

    async def stop(self) -> None:
        """Kill the server and wait for it and its tasks to finish."""
        self.kill()
        try:
            await asyncio.wait_for(self.process.wait(), timeout=5.0)
        except asyncio.TimeoutError:  # pragma: no cover - kill is not ignorable
            logger.warning("llama-server (pid=%s) did not exit after kill", self.pid)
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "returncode": self.returncode,
            "base_url": self.base_url,
            "model_path": str(self.model_path),
            "ready": self.ready,
            "served_model_id": self.served_model_id,
            "log_lines": len(self.log),
        }


def format_args(
    binary_path: Path,
    model_path: Path,
    offload_hint: str,
    *,
    host: str = DEFAULT_SERVER_HOST,
    port: int = DEFAULT_SERVER_PORT,
    extra_args: Sequence[str] = (),
) -> list[str]:
    """Compose the llama-server command line."""
    args: list[str] = [
        str(binary_path),
        "-m",
        str(model_path),
        "-ngl",
        str(offload_hint),
        "--port",
        str(port),
        "--host",
        host,
    ]
    args.extend(extra_args)
    return args


def _extract_model_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, list) and data:
        first = data[0]
        if isinstance(first, dict) and isinstance(first.get("id"), str):
            return first["id"]
    return None


async def wait_until_ready(
    client: httpx.AsyncClient,
    base_url: str,
    *,
    interval: float = READINESS_PROBE_INTERVAL,
    attempts: int = READINESS_PROBE_ATTEMPTS,
) -> str | None:
    """Poll the health endpoint until it answers; return the served model id, if any.

    Raises ReadinessTimeout once ``attempts`` probes have failed.
    """
    url = f"{base_url}{HEALTH_ENDPOINT}"
    for attempt in range(1, attempts + 1):
        try:
            response = await client.get(url)
            if response.is_success:
                try:
                    payload = response.json()
                except ValueError:
                    payload = None
                logger.info("llama-server is ready at %s (attempt %s)", url, attempt)
                return _extract_model_id(payload)
        except httpx.HTTPError as exc:
            logger.debug("Readiness probe %s/%s failed: %s", attempt, attempts, exc)
        if attempt < attempts:
            await asyncio.sleep(interval)
    raise ReadinessTimeout(f"llama-server did not answer {url} after {attempts} attempts")


async def _probe_readiness(
    base_url: str,
    mailbox: Mailbox[str],
    *,
    interval: float,
    attempts: int,
    client: httpx.AsyncClient | None,
) -> None:
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=httpx.Timeout(2.0))
    try:
        model_id = await wait_until_ready(client, base_url, interval=interval, attempts=attempts)
    except ReadinessTimeout as exc:
        # Left unsurfaced: the controller stays in Starting.
        logger.warning("%s", exc)
        return
    finally:
        if owns_client:
            await client.aclose()
    if not mailbox.send(READY_LINE):
        return
    if model_id:
        mailbox.send(f"{MODEL_SENTINEL}{model_id}")


async def _pump_stream(
    stream: asyncio.StreamReader,
    tag: str,
    mailbox: Mailbox[str],
    log_handle: TextIO | None,
) -> None:
    """Forward every line of a child stream into the shared log mailbox."""
    try:
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip("\r\n")
            logger.debug("[llama-server %s] %s", tag.strip(), text)
            if log_handle is not None:
                log_handle.write(f"{tag}{text}\n")
                log_handle.flush()
            if not mailbox.send(f"{tag}{text}"):
                break
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # pragma: no cover - diagnostic only
        logger.debug("Error reading llama-server %s stream: %s", tag.strip(), exc)


async def _close_when_done(tasks: Sequence[asyncio.Task[None]], handle: TextIO) -> None:
    try:
        await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        handle.close()


async def start_server(
    binary_path: Path,
    model_path: Path,
    offload_hint: str,
    *,
    host: str = DEFAULT_SERVER_HOST,
    port: int = DEFAULT_SERVER_PORT,
    extra_args: Sequence[str] = (),
    probe_interval: float = READINESS_PROBE_INTERVAL,
    probe_attempts: int = READINESS_PROBE_ATTEMPTS,
    client: httpx.AsyncClient | None = None,
    log_path: Path | None = None,
) -> tuple[ProcessHandle, Mailbox[str]]:
    """Spawn llama-server and its watchers; return the handle and the log mailbox."""
    binary_path = Path(binary_path)
    model_path = Path(model_path)
    if not binary_path.exists():
        raise ProcessError(f"llama-server binary not found at {binary_path}")
    if not model_path.exists():
        raise ProcessError(f"model file not found at {model_path}")
    command = format_args(binary_path, model_path, offload_hint, host=host, port=port, extra_args=extra_args)
    logger.info("Starting llama-server: %s", shlex.join(command))
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise ProcessError(f"failed to spawn {binary_path}: {exc}") from exc

    log_handle: TextIO | None = None
    if log_path is not None:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_handle = log_path.open("a", encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot open llama-server log file %s: %s", log_path, exc)

    mailbox: Mailbox[str] = Mailbox("server-log")
    base_url = f"http://{host}:{port}"
    pumps: list[asyncio.Task[None]] = []
    if process.stdout is not None:
        pumps.append(asyncio.create_task(_pump_stream(process.stdout, STDOUT_TAG, mailbox, log_handle)))
    if process.stderr is not None:
        pumps.append(asyncio.create_task(_pump_stream(process.stderr, STDERR_TAG, mailbox, log_handle)))
    probe = asyncio.create_task(
        _probe_readiness(base_url, mailbox, interval=probe_interval, attempts=probe_attempts, client=client)
    )
    tasks = [*pumps, probe]
    if log_handle is not None:
        tasks.append(asyncio.create_task(_close_when_done(pumps, log_handle)))
    handle = ProcessHandle(process, base_url=base_url, model_path=model_path, tasks=tasks)
    logger.info("Started llama-server (pid=%s)", process.pid)
    return handle, mailbox


__all__ = [
    "ProcessHandle",
    "RingLog",
    "format_args",
    "start_server",
    "wait_until_ready",
]
