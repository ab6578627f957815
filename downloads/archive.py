"""Zip extraction for runtime archives, one entry at a time."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import zipfile
from pathlib import Path
from typing import Callable

from app.errors import StorageError

logger = logging.getLogger("mercury.downloads.archive")

EXECUTABLE_MODE = 0o755


def _is_directory_entry(name: str) -> bool:
    return name.endswith("/")


def _resolve_entry_path(destination: Path, name: str) -> Path:
    """Map an archive entry name to a path inside ``destination``."""
    root = destination.resolve()
    target = (root / name).resolve()
    if target != root and root not in target.parents:
        raise StorageError(f"archive entry escapes destination: {name}")
    return target


def extract_entry(archive: zipfile.ZipFile, info: zipfile.ZipInfo, destination: Path) -> Path:
    """Materialise a single entry under ``destination`` and return its path."""
    target = _resolve_entry_path(destination, info.filename)
    if _is_directory_entry(info.filename):
        target.mkdir(parents=True, exist_ok=True)
        return target
    target.parent.mkdir(parents=True, exist_ok=True)
    with archive.open(info) as source, target.open("wb") as sink:
        shutil.copyfileobj(source, sink)
    if os.name == "posix":
        os.chmod(target, EXECUTABLE_MODE)
    return target


async def unpack_archive(
    archive_path: Path,
    destination: Path,
    on_entry: Callable[[int, int], bool],
) -> int:
    """Extract entry by entry, running each copy in a worker thread."""
    await asyncio.to_thread(destination.mkdir, parents=True, exist_ok=True)
    archive = await asyncio.to_thread(zipfile.ZipFile, archive_path)
    try:
        entries = archive.infolist()
        total = len(entries)
        logger.debug("Unpacking %s entries from %s into %s", total, archive_path, destination)
        for index, info in enumerate(entries):
            await asyncio.to_thread(extract_entry, archive, info, destination)
            if not on_entry(index + 1, total):
                return index + 1
        return total
    finally:
        archive.close()


__all__ = ["extract_entry", "unpack_archive"]
