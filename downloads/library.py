"""Inventory of model files already present on disk."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class DownloadedModel:
    file_name: str
    path: Path
    size: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "file_name": self.file_name,
            "path": str(self.path),
            "size": self.size,
            "size_label": human_size(self.size) if self.size is not None else None,
        }


def human_size(num_bytes: int) -> str:
    """Format a byte count with binary units (``1.50 MB``)."""
    kb = 1024.0
    mb = kb * 1024.0
    gb = mb * 1024.0
    value = float(num_bytes)
    if value >= gb:
        return f"{value / gb:.2f} GB"
    if value >= mb:
        return f"{value / mb:.2f} MB"
    if value >= kb:
        return f"{value / kb:.2f} KB"
    return f"{num_bytes} B"


def scan_downloaded_models(model_dir: Path) -> list[DownloadedModel]:
    """List ``*.gguf`` files in ``model_dir``, newest first, then by name."""
    if not model_dir.is_dir():
        return []
    found: list[tuple[float, DownloadedModel]] = []
    for entry in model_dir.iterdir():
        if not entry.is_file() or not entry.name.lower().endswith(".gguf"):
            continue
        try:
            stat = entry.stat()
        except OSError:
            continue
        found.append((stat.st_mtime, DownloadedModel(entry.name, entry, stat.st_size)))
    found.sort(key=lambda item: (-item[0], item[1].file_name))
    return [model for _, model in found]


__all__ = ["DownloadedModel", "human_size", "scan_downloaded_models"]
