"""Runtime state container for mutable cross-cutting variables."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from downloads.engine import DownloadKind, DownloadTask
from downloads.library import DownloadedModel
from inference.backends import Backend
from inference.chat_stream import ChatMessage


@dataclass(frozen=True)
class RuntimeInfo:
    """A llama-server build found on disk."""

    name: str
    path: Path
    version: str = "Unknown"
    backend: Backend = Backend.AUTO

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "path": str(self.path),
            "version": self.version,
            "backend": self.backend.value,
        }


@dataclass
class AppState:
    """Shared state read by the presentation layer and written only by the control loop."""

    backend: Backend = Backend.AUTO
    status_text: str = "Initializing..."
    server_url: str = ""
    server_bin: Path | None = None
    model_repo: str = ""
    model_file: str = ""
    model_path: Path | None = None
    loaded_model: str | None = None
    messages: List[ChatMessage] = field(default_factory=list)
    downloads: Dict[DownloadKind, DownloadTask] = field(default_factory=dict)
    downloaded_models: List[DownloadedModel] = field(default_factory=list)
    available_runtimes: List[RuntimeInfo] = field(default_factory=list)
    current_runtime: RuntimeInfo | None = None
    streaming: bool = False

    def progress_for(self, kind: DownloadKind) -> DownloadTask | None:
        return self.downloads.get(kind)

    def append_token(self, text: str) -> None:
        """Extend the trailing assistant message with a streamed fragment."""
        if self.messages and self.messages[-1].role == "assistant":
            self.messages[-1].content += text

    def trim_history(self, limit: int) -> None:
        if limit > 0 and len(self.messages) > limit:
            del self.messages[: len(self.messages) - limit]

    def snapshot(self) -> dict[str, Any]:
        return {
            "status": self.status_text,
            "backend": self.backend.value,
            "server_url": self.server_url,
            "server_bin": str(self.server_bin) if self.server_bin else None,
            "model_repo": self.model_repo,
            "model_file": self.model_file,
            "model_path": str(self.model_path) if self.model_path else None,
            "loaded_model": self.loaded_model,
            "streaming": self.streaming,
            "messages": [message.to_dict() for message in self.messages],
            "downloads": {kind.value: task.to_dict() for kind, task in self.downloads.items()},
            "downloaded_models": [model.to_dict() for model in self.downloaded_models],
            "available_runtimes": [runtime.to_dict() for runtime in self.available_runtimes],
            "current_runtime": self.current_runtime.to_dict() if self.current_runtime else None,
        }


__all__ = ["AppState", "RuntimeInfo"]
