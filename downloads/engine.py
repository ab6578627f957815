"""Concurrent fetch-and-optionally-unpack tasks for runtimes and models."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import httpx

from app.constants import DOWNLOAD_CHUNK_SIZE
from app.errors import describe_error
from downloads.archive import unpack_archive
from state_engine.mailbox import Mailbox

logger = logging.getLogger("mercury.downloads")

STAGE_DOWNLOAD = "download"
STAGE_UNPACK = "unpack"
PARTIAL_SUFFIX = ".part"


def partial_path(destination: Path) -> Path:
    """Where a plain download is written before it is moved onto ``destination``."""
    return destination.with_name(destination.name + PARTIAL_SUFFIX)


class DownloadKind(str, enum.Enum):
    RUNTIME = "runtime"
    MODEL = "model"


@dataclass(frozen=True)
class DownloadProgress:
    kind: DownloadKind
    current: int
    total: int | None
    stage: str


@dataclass(frozen=True)
class DownloadDone:
    kind: DownloadKind
    destination: Path | None = None


@dataclass(frozen=True)
class DownloadError:
    kind: DownloadKind
    message: str


DownloadEvent = Union[DownloadProgress, DownloadDone, DownloadError]


@dataclass
class DownloadTask:
    """Consumer-side record of one download, updated from its events."""

    kind: DownloadKind
    url: str
    destination: Path
    bytes_downloaded: int = 0
    total_bytes: int | None = None
    stage: str = STAGE_DOWNLOAD
    finished: bool = False
    error: str | None = None

    def apply(self, event: DownloadEvent) -> None:
        """Fold a single event into the record."""
        if isinstance(event, DownloadProgress):
            if event.stage != self.stage:
                self.stage = event.stage
                self.bytes_downloaded = 0
            self.bytes_downloaded = max(self.bytes_downloaded, event.current)
            self.total_bytes = event.total
        elif isinstance(event, DownloadDone):
            self.finished = True
        elif isinstance(event, DownloadError):
            self.finished = True
            self.error = event.message

    @property
    def fraction(self) -> float | None:
        if not self.total_bytes:
            return None
        return min(1.0, self.bytes_downloaded / self.total_bytes)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "url": self.url,
            "destination": str(self.destination),
            "current": self.bytes_downloaded,
            "total": self.total_bytes,
            "stage": self.stage,
            "fraction": self.fraction,
            "error": self.error,
        }


def _content_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


async def _fetch_to_file(
    client: httpx.AsyncClient,
    kind: DownloadKind,
    url: str,
    target: Path,
    mailbox: Mailbox[DownloadEvent],
) -> bool:
    """Stream ``url`` into ``target``; return ``False`` if the receiver went away."""
    async with client.stream("GET", url) as response:
        response.raise_for_status()
        total = _content_length(response)
        target.parent.mkdir(parents=True, exist_ok=True)
        downloaded = 0
        with target.open("wb") as handle:
            async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                handle.write(chunk)
                downloaded += len(chunk)
                if not mailbox.send(DownloadProgress(kind, downloaded, total, STAGE_DOWNLOAD)):
                    logger.info("%s download abandoned by receiver at %s bytes", kind.value, downloaded)
                    return False
    logger.info("Fetched %s bytes from %s into %s", downloaded, url, target)
    return True


async def _run_download(
    kind: DownloadKind,
    url: str,
    destination: Path,
    archive_path: Path | None,
    client: httpx.AsyncClient | None,
    mailbox: Mailbox[DownloadEvent],
) -> None:
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(follow_redirects=True, timeout=httpx.Timeout(30.0, read=None))
    # Plain files land under a temporary name until the body is complete.
    part_path = partial_path(destination) if archive_path is None else None
    try:
        target = archive_path if archive_path is not None else part_path
        if not await _fetch_to_file(client, kind, url, target, mailbox):
            return
        if part_path is not None:
            part_path.replace(destination)
            mailbox.send(DownloadDone(kind, destination))
            return

        def report(current: int, total: int) -> bool:
            return mailbox.send(DownloadProgress(kind, current, total, STAGE_UNPACK))

        unpacked = await unpack_archive(archive_path, destination, report)
        logger.info("Unpacked %s entries into %s", unpacked, destination)
        mailbox.send(DownloadDone(kind, None))
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        message = describe_error(exc)
        logger.warning("%s download from %s failed: %s", kind.value, url, message)
        mailbox.send(DownloadError(kind, message))
    finally:
        if part_path is not None:
            part_path.unlink(missing_ok=True)
        if owns_client:
            await client.aclose()


def start_download(
    kind: DownloadKind,
    url: str,
    destination: Path,
    *,
    archive_path: Path | None = None,
    client: httpx.AsyncClient | None = None,
) -> tuple[Mailbox[DownloadEvent], asyncio.Task[None]]:
    """Spawn a background download and return its event mailbox and task.

    When ``archive_path`` is given the body is saved there and then unpacked
    into ``destination``; otherwise the body is written to ``destination``.
    Must be called from inside a running event loop.
    """
    mailbox: Mailbox[DownloadEvent] = Mailbox(f"download:{kind.value}")
    logger.info("Starting %s download: %s", kind.value, url)
    task = asyncio.create_task(
        _run_download(kind, url, Path(destination), archive_path, client, mailbox),
        name=f"download-{kind.value}",
    )
    return mailbox, task


__all__ = [
    "DownloadDone",
    "DownloadError",
    "DownloadEvent",
    "DownloadKind",
    "DownloadProgress",
    "DownloadTask",
    "STAGE_DOWNLOAD",
    "STAGE_UNPACK",
    "partial_path",
    "start_download",
]
