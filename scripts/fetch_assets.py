"""Download the llama.cpp runtime and/or a GGUF model without starting the UI.

Runs a :class:`StateEngine` headless and ticks it until every requested
download has finished, printing the same status line the UI would show.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import config  # noqa: E402
from app.errors import MercuryError  # noqa: E402
from app.settings import RuntimeSettings  # noqa: E402
from state_engine.engine import StateEngine  # noqa: E402


async def fetch(args: argparse.Namespace) -> int:
    config.ensure_layout()
    engine = StateEngine(RuntimeSettings.load())
    try:
        if args.runtime:
            await engine.ensure_runtime()
        if args.model:
            engine.start_model_download(args.repo, args.file)
    except MercuryError as exc:
        print(f"[fetch] {exc}")
        return 1

    last_status = ""
    while engine.state.downloads:
        await engine.tick()
        if engine.state.status_text != last_status:
            last_status = engine.state.status_text
            print(f"[fetch] {last_status}")
        await asyncio.sleep(engine.tick_interval)
    await engine.tick()
    print(f"[fetch] {engine.state.status_text}")
    await engine.shutdown()
    return 1 if " err: " in engine.state.status_text else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Fetch llama.cpp runtime and model files.")
    parser.add_argument("--runtime", action="store_true", help="Ensure the llama-server runtime is unpacked.")
    parser.add_argument("--model", action="store_true", help="Download the configured model file.")
    parser.add_argument("--repo", help="Hub repository to fetch the model from.")
    parser.add_argument("--file", help="GGUF file name inside the repository.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args(argv)
    if not args.runtime and not args.model:
        args.runtime = args.model = True

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(fetch(args))


if __name__ == "__main__":
    raise SystemExit(main())
