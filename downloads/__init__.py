"""Download package exports."""

from .engine import (
    DownloadDone,
    DownloadError,
    DownloadEvent,
    DownloadKind,
    DownloadProgress,
    DownloadTask,
    start_download,
)
from .library import DownloadedModel, human_size, scan_downloaded_models

__all__ = [
    "DownloadDone",
    "DownloadError",
    "DownloadEvent",
    "DownloadKind",
    "DownloadProgress",
    "DownloadTask",
    "DownloadedModel",
    "human_size",
    "scan_downloaded_models",
    "start_download",
]
