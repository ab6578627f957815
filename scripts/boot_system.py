"""Boot the Mercury LM control surface (FastAPI + drain loop) in one command.

The script prepares the data directory, exports the ``MERCURY_*`` variables
read by :mod:`app.settings`, starts uvicorn for ``main:app`` and optionally
opens the browser once ``/ping`` answers. llama-server itself is started on
demand by the lifecycle controller, not here.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import subprocess
import sys
import time
import webbrowser
from pathlib import Path
from typing import Any

import httpx


def _detect_root() -> Path:
    """Locate the project root from the script location or the working directory."""
    for base in (Path(__file__).resolve(), Path.cwd().resolve()):
        for candidate in [base, *base.parents]:
            if (candidate / "main.py").exists() and (candidate / "scripts").exists():
                return candidate
    raise FileNotFoundError("Unable to locate project root (expected to find main.py).")


ROOT = _detect_root()
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _ensure_env(args: argparse.Namespace) -> dict[str, str]:
    """Populate the environment variables consumed by main.py / RuntimeSettings."""
    env = os.environ.copy()
    if args.data_dir:
        env["MERCURY_DATA_DIR"] = str(Path(args.data_dir).expanduser())
    if args.backend:
        env["MERCURY_BACKEND"] = args.backend
    if args.server_host:
        env["MERCURY_SERVER_HOST"] = args.server_host
    if args.server_port:
        env["MERCURY_SERVER_PORT"] = str(args.server_port)
    if args.server_args is not None:
        env["MERCURY_SERVER_ARGS"] = args.server_args
    return env


async def _await_ping(host: str, port: int, timeout: float = 60.0) -> dict[str, Any]:
    """Poll the FastAPI `/ping` endpoint until it responds."""
    url = f"http://{host}:{port}/ping"
    deadline = time.monotonic() + timeout
    async with httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=10.0)) as client:
        while time.monotonic() < deadline:
            try:
                resp = await client.get(url)
                if resp.status_code == 200:
                    return resp.json()
            except httpx.HTTPError:
                pass
            await asyncio.sleep(0.5)
    raise TimeoutError(f"Timed out waiting for FastAPI to respond at {url}")


async def _prefetch(host: str, port: int) -> None:
    """Ask the running app to make sure a runtime is available."""
    url = f"http://{host}:{port}/runtime/ensure"
    async with httpx.AsyncClient(timeout=httpx.Timeout(60.0)) as client:
        resp = await client.post(url)
        if resp.status_code >= 400:
            print(f"[boot] Runtime check failed: {resp.json().get('detail', resp.text)}")
        else:
            print(f"[boot] Runtime: {resp.json().get('status')}")


async def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Boot the Mercury LM control surface.")
    parser.add_argument("--data-dir", help="Override MERCURY_DATA_DIR.")
    parser.add_argument("--backend", choices=["auto", "cpu", "cuda", "hip", "metal", "vulkan"], help="Runtime backend.")
    parser.add_argument("--server-host", help="Host for llama-server (defaults to 127.0.0.1).")
    parser.add_argument("--server-port", type=int, help="Port for llama-server (defaults to 8080).")
    parser.add_argument("--server-args", help="Extra llama-server arguments.")
    parser.add_argument("--ui-host", default=DEFAULT_HOST, help="FastAPI host (default 127.0.0.1).")
    parser.add_argument("--ui-port", type=int, default=DEFAULT_PORT, help="FastAPI port (default 8000).")
    parser.add_argument("--ensure-runtime", action="store_true", help="Download the runtime if missing.")
    parser.add_argument("--no-browser", action="store_true", help="Do not open the browser automatically.")
    args = parser.parse_args(argv)

    env = _ensure_env(args)
    uvicorn_cmd = [
        sys.executable,
        "-m",
        "uvicorn",
        "main:app",
        "--log-level",
        "info",
        "--host",
        args.ui_host,
        "--port",
        str(args.ui_port),
    ]
    proc = subprocess.Popen(uvicorn_cmd, cwd=ROOT, env=env)

    def _handle_signal(signum: int, _frame: Any) -> None:
        if proc.poll() is None:
            proc.send_signal(signal.SIGINT)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        status = await _await_ping(args.ui_host, args.ui_port, timeout=120.0)
        print(f"[boot] FastAPI ready at http://{args.ui_host}:{args.ui_port}/ (server: {status.get('server')})")
        if args.ensure_runtime:
            await _prefetch(args.ui_host, args.ui_port)
        if not args.no_browser:
            webbrowser.open(f"http://{args.ui_host}:{args.ui_port}/docs")
        return await asyncio.to_thread(proc.wait)
    finally:
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=10.0)
            except subprocess.TimeoutExpired:
                proc.kill()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
